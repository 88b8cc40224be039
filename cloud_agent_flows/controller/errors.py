"""Errors raised while driving exchanges."""
from typing import Optional


class ExchangeError(Exception):
    """Base class for exchange errors."""


class ValidationError(ExchangeError):
    """Raised when local input is missing or malformed."""


class RemoteError(ExchangeError):
    """Raised when the agent service rejects a command."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.detail:
            parts.append(f"detail={self.detail}")
        return " ".join(parts)


class PollError(ExchangeError):
    """Raised when a state query fails; pollers retry these."""


class StateTransitionError(PollError):
    """Raised when an observed state would move an exchange backward."""


class AmbiguousStateError(ExchangeError):
    """Raised when discovery finds more than one candidate exchange."""


class SequenceError(ExchangeError):
    """Raised when an operation is invoked out of order."""
