"""NAT-PMP retransmission policy (RFC 6886 section 3.1).

The client waits 250 ms for the first reply and doubles the wait after every
unanswered transmission, giving up after the ninth attempt.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Protocol, TypeVar

from natfwd.nat.exceptions import CodecError, NoResponseError
from natfwd.utils.backoff import ExponentialBackoff

logger = logging.getLogger(__name__)

NAT_PMP_INITIAL_TIMEOUT = 0.25
NAT_PMP_MAX_ATTEMPTS = 9

T = TypeVar("T")


class ExchangeTransport(Protocol):
    """What the retry loop needs from a transport."""

    def send(self, datagram: bytes) -> None: ...

    async def recv(self, timeout: float) -> bytes | None: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential retransmission schedule."""

    initial_timeout: float = NAT_PMP_INITIAL_TIMEOUT
    max_attempts: int = NAT_PMP_MAX_ATTEMPTS
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.initial_timeout <= 0:
            msg = "initial_timeout must be positive"
            raise ValueError(msg)
        if self.max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)

    @property
    def backoff(self) -> ExponentialBackoff:
        """Deterministic backoff generating the per-attempt timeouts."""
        return ExponentialBackoff(
            base_delay=self.initial_timeout,
            multiplier=self.multiplier,
        )

    def timeout_for(self, attempt: int) -> float:
        """Timeout of the given attempt (1-based)."""
        return self.backoff.next_delay(attempt - 1)

    @property
    def total_wait(self) -> float:
        """Worst-case time spent before giving up."""
        return sum(self.timeout_for(n) for n in range(1, self.max_attempts + 1))


@dataclass
class RetryState:
    """Progress of one exchange through the schedule."""

    attempt: int = 0
    current_timeout: float = 0.0

    def advance(self, policy: RetryPolicy) -> None:
        """Move to the next attempt."""
        self.attempt += 1
        self.current_timeout = policy.timeout_for(self.attempt)


async def exchange(
    transport: ExchangeTransport,
    datagram: bytes,
    accept: Callable[[bytes], T],
    policy: RetryPolicy | None = None,
    clock: Callable[[], float] | None = None,
) -> T:
    """Send ``datagram`` until ``accept`` takes a reply or attempts run out.

    ``accept`` decodes a reply and raises ``CodecError`` for anything that
    does not answer the outstanding request. Such datagrams are ignored and
    the current attempt keeps waiting until its own deadline. The first
    accepted reply is returned immediately.

    Args:
        transport: Open transport connected to the gateway
        datagram: Encoded request
        accept: Reply decoder
        policy: Retransmission schedule (default: RFC 6886)
        clock: Monotonic clock in seconds (default: the running loop's)

    Returns:
        Whatever ``accept`` returned for the first valid reply

    Raises:
        NoResponseError: No valid reply after ``policy.max_attempts`` attempts
        TransportError: The socket failed

    """
    policy = policy or RetryPolicy()
    if clock is None:
        clock = asyncio.get_running_loop().time
    state = RetryState()

    while state.attempt < policy.max_attempts:
        state.advance(policy)
        transport.send(datagram)
        deadline = clock() + state.current_timeout
        logger.debug(
            "NAT-PMP attempt %d/%d, waiting %.3fs",
            state.attempt,
            policy.max_attempts,
            state.current_timeout,
        )

        while True:
            remaining = deadline - clock()
            if remaining <= 0:
                break
            data = await transport.recv(remaining)
            if data is None:
                break
            try:
                return accept(data)
            except CodecError as e:
                logger.debug("Ignoring unexpected datagram: %s", e)

    logger.warning(
        "No NAT-PMP response after %d attempts (%.2fs)",
        state.attempt,
        policy.total_wait,
    )
    msg = f"No response from NAT-PMP gateway after {state.attempt} attempts"
    raise NoResponseError(
        msg,
        details={"attempts": state.attempt, "waited": policy.total_wait},
    )
