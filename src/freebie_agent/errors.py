from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthFailure(str, Enum):
    NAVIGATION_FAILED = "NavigationFailed"
    LOGIN_FORM_MISSING = "LoginFormMissing"
    INVALID_CREDENTIALS = "InvalidCredentials"
    UNRECOGNIZED_SURFACE = "UnrecognizedSurface"
    CHALLENGE_UNRESOLVED = "ChallengeUnresolved"
    CHALLENGE_FAILED = "ChallengeFailed"
    CHALLENGE_TIMEOUT = "ChallengeTimeout"
    CHALLENGE_EXHAUSTED = "ChallengeExhausted"
    SESSION_EXPIRED = "SessionExpired"


class ScanFailure(str, Enum):
    NAVIGATION_FAILED = "NavigationFailed"
    LISTING_NOT_READY = "ListingNotReady"
    EXTRACTION_FAILED = "ExtractionFailed"


class TransactionFailure(str, Enum):
    QUOTA_EXCEEDED = "QuotaExceeded"
    NAVIGATION_FAILED = "NavigationFailed"
    STEP_TIMEOUT = "StepTimeout"
    STEP_FAILED = "StepFailed"


class AgentError(RuntimeError):
    """
    Base class for errors raised by the agent core.

    Every error carries a `kind` so notifications and logs can say what went wrong without a traceback.
    """

    def __init__(self, kind: Enum, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class AuthenticationError(AgentError):
    """Fatal to the run: every later action depends on an authenticated session."""

    def __init__(self, kind: AuthFailure, message: str) -> None:
        super().__init__(kind, message)


class ScanError(AgentError):
    """Recoverable; isolated to one scan cycle."""

    def __init__(self, kind: ScanFailure, message: str) -> None:
        super().__init__(kind, message)


class TransactionError(AgentError):
    """Recoverable; isolated to one item."""

    def __init__(self, kind: TransactionFailure, message: str, *, step: Optional[str] = None) -> None:
        super().__init__(kind, message)
        self.step = step

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (step={self.step})" if self.step else base


class NotificationError(RuntimeError):
    """Raised by notifier transports; always logged and swallowed by `SafeNotifier`."""
