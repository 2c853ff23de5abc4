"""Rich logging integration for natfwd.

Provides a Rich console handler that carries correlation IDs and a file
formatter that strips Rich markup.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

_MARKUP_PATTERN = re.compile(r"(?<!\\)\[/?[^\]]+\]")


class CorrelationRichHandler(RichHandler):
    """RichHandler with correlation ID support.

    Method names are prefixed in pink, protocol keywords (TCP, UDP,
    NAT-PMP result names) are highlighted in orange.
    """

    KEYWORD_PATTERN = re.compile(r"\b[A-Z][A-Z_]*[A-Z]\b")

    def __init__(
        self,
        *args: Any,
        console: Console | None = None,
        show_colors: bool = True,
        **kwargs: Any,
    ) -> None:
        """Initialize RichHandler.

        Args:
            *args: Positional arguments for RichHandler
            console: Optional Rich Console instance
            show_colors: Whether to add markup to messages
            **kwargs: Keyword arguments for RichHandler

        """
        if console is None:
            console = Console(file=sys.stdout, markup=True, color_system="auto")

        self.show_colors = show_colors

        # RichHandler does not render markup unless asked to
        kwargs.setdefault("markup", True)
        super().__init__(*args, console=console, **kwargs)

    def _colorize(self, message: str) -> str:
        """Highlight ALL_CAPS keywords in the message."""
        return self.KEYWORD_PATTERN.sub(
            lambda m: f"[orange1]{m.group(0)}[/orange1]", message
        )

    def emit(self, record: logging.LogRecord) -> None:
        """Emit a log record with correlation ID and method name coloring."""
        try:
            if not hasattr(record, "correlation_id"):
                from natfwd.utils.logging_config import get_correlation_id

                record.correlation_id = get_correlation_id() or "no-correlation-id"

            if self.show_colors:
                # Escape brackets from user data before adding our own markup
                message = record.getMessage().replace("[", r"\[")
                message = self._colorize(message)
                func_name = getattr(record, "funcName", None)
                if func_name:
                    message = f"[#ff69b4]{func_name}[/#ff69b4] {message}"
                record.msg = message
                record.args = ()

            super().emit(record)
        except Exception:
            self.handleError(record)


def strip_rich_markup(text: str) -> str:
    """Strip Rich markup from text for file logging.

    Args:
        text: Text with Rich markup

    Returns:
        Text without Rich markup

    """
    return _MARKUP_PATTERN.sub("", text).replace(r"\[", "[")


class FileFormatter(logging.Formatter):
    """Formatter for file output that strips Rich markup."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record, stripping Rich markup for file output."""
        return strip_rich_markup(super().format(record))


def create_rich_handler(
    console: Console | None = None,
    level: int | str = logging.INFO,
    show_path: bool = False,
    rich_tracebacks: bool = True,
    show_colors: bool = True,
) -> logging.Handler:
    """Create a RichHandler with correlation ID support.

    Args:
        console: Optional Rich Console instance
        level: Log level
        show_path: Whether to show file paths in log output
        rich_tracebacks: Whether to use rich tracebacks
        show_colors: Whether to use colors for log levels

    Returns:
        Configured RichHandler instance

    """
    return CorrelationRichHandler(
        console=console,
        level=level,
        show_path=show_path,
        rich_tracebacks=rich_tracebacks,
        show_colors=show_colors,
    )
