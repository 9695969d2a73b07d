"""
Exception hierarchy for the StudyBuddy voice subsystem.

Speech backends raise SynthesisError subclasses, the usage ledger raises
LedgerUnavailableError, and subscription operations raise SubscriptionError
subclasses carrying the HTTP status the service answers with. The router
translates backend and ledger failures into fallback decisions, so none of
these reach the caller of ``TTSRouter.speak``.
"""

from __future__ import annotations

from typing import Any


class VoiceError(Exception):
    """Base exception for all voice subsystem errors.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary of additional error context
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SynthesisError(VoiceError):
    """A speech backend failed to produce audio.

    Attributes:
        engine_name: Name of the backend that failed
        recoverable: Whether retrying the same backend later may succeed
    """

    def __init__(
        self,
        message: str,
        engine_name: str,
        recoverable: bool = True,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.engine_name = engine_name
        self.recoverable = recoverable


class VendorError(SynthesisError):
    """The premium vendor rejected or failed the request.

    Attributes:
        status_code: HTTP status returned by the vendor, None for transport
            failures and malformed responses
    """

    def __init__(
        self,
        message: str,
        engine_name: str = "premium",
        status_code: int | None = None,
        recoverable: bool = True,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, engine_name, recoverable, details)
        self.status_code = status_code


class FallbackUnavailableError(SynthesisError):
    """No on-device speech capability exists on this host."""

    def __init__(self, message: str = "On-device speech is not available",
                 engine_name: str = "device",
                 details: dict[str, Any] | None = None):
        super().__init__(message, engine_name, recoverable=False, details=details)


class PlaybackError(VoiceError):
    """Audio could not be played."""
    pass


class LedgerUnavailableError(VoiceError):
    """The usage ledger could not be reached or the store failed."""
    pass


class SubscriptionError(VoiceError):
    """Base class for subscription operation failures.

    Attributes:
        status_code: HTTP status the service responds with
    """

    status_code: int = 400

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        if status_code is not None:
            self.status_code = status_code


class ValidationError(SubscriptionError):
    """Malformed or missing input."""

    status_code = 400


class UnauthorizedError(SubscriptionError):
    """Operator credentials missing or wrong."""

    status_code = 401


class NotFoundError(SubscriptionError):
    """Referenced subscription or request does not exist."""

    status_code = 404


class ConflictError(SubscriptionError):
    """Operation conflicts with the current state (e.g. already pending)."""

    status_code = 409
