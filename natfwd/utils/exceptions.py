"""Exception hierarchy for natfwd.

Every error raised by the package derives from ``NatfwdError`` so callers
can carry a human readable message together with structured details.
"""

from __future__ import annotations

from typing import Any


class NatfwdError(Exception):
    """Base exception for all natfwd errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize natfwd error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(NatfwdError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""
