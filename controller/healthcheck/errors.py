"""Error taxonomy for the screening session."""
from __future__ import annotations

from typing import Optional


class SessionFlowError(RuntimeError):
    """Base for failures that carry a message safe to show on the kiosk."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


class TransportError(SessionFlowError):
    """Connection drop or malformed payload; recovered inside the transport."""


class LivenessTimeout(SessionFlowError):
    """Telemetry went silent; the session is over."""


class PreconditionError(SessionFlowError):
    """Submission refused before any I/O (missing identity, stage not complete)."""


class SubmissionError(SessionFlowError):
    """Backend unreachable or rejected the results."""

    def __init__(
        self,
        user_message: str,
        *,
        log_message: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(user_message, log_message=log_message)
        self.status_code = status_code
        self.retryable = retryable


__all__ = [
    "LivenessTimeout",
    "PreconditionError",
    "SessionFlowError",
    "SubmissionError",
    "TransportError",
]
