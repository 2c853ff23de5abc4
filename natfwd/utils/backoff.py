"""Backoff utilities for retry policies."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ExponentialBackoff:
    """Deterministic exponential backoff.

    NAT-PMP retransmission requires a fixed doubling schedule, so there is
    no cap and no jitter.
    """

    base_delay: float = 1.0
    multiplier: float = 2.0

    def next_delay(self, retries: int) -> float:
        """Calculate the delay for given retry count (0-based)."""
        return self.base_delay * (self.multiplier ** max(0, retries))
