"""
Errors - Fehler-Taxonomie der Auto-Mode Engine.

Key Features:
- Eigene Exception-Klassen pro Fehlerart
- Klassifizierung beliebiger Exceptions (authentication / abort / timeout / ...)
- User-freundliche Messages für die UI
"""

import asyncio
from dataclasses import dataclass
from enum import Enum


AUTH_FAILURE_MESSAGE = (
    "Authentication failed: Invalid or expired API key. "
    "Please check your ANTHROPIC_API_KEY, or run 'claude login' to re-authenticate."
)

# Strings, an denen ein Auth-Fehler im Stream oder in einer Message erkannt wird
AUTH_FAILURE_MARKERS = (
    "Authentication failed",
    "Invalid API key",
    "authentication_failed",
    "Fix external API key",
)

MAX_DISPLAY_LENGTH = 500


class AutoModeError(Exception):
    """Basis-Klasse aller Engine-Fehler."""


class CancellationError(AutoModeError):
    """Run wurde abgebrochen (User oder Timeout). Kein Fehler für die UI."""

    def __init__(self, message: str = "Operation was aborted"):
        super().__init__(message)


class AuthenticationError(AutoModeError):
    """Provider hat die Authentifizierung abgelehnt."""

    def __init__(self, message: str = AUTH_FAILURE_MESSAGE):
        super().__init__(message)


class PhaseParseError(AutoModeError):
    """Stream endete ohne den erwarteten Marker."""

    def __init__(self, phase: str, expected: str):
        self.phase = phase
        self.expected = expected
        super().__init__(
            f"{phase} phase ended without a {expected} marker - no valid result"
        )


class PhaseTimeoutError(AutoModeError):
    """Phase hat das Zeitlimit überschritten."""

    def __init__(self, phase: str, timeout: float):
        self.phase = phase
        self.timeout = timeout
        super().__init__(f"{phase} phase timed out after {timeout:g}s")


class ApprovalNotFoundError(AutoModeError):
    """Kein Pending Approval für das Feature."""

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(f"No pending approval found for feature {feature_id}")


class ApprovalTimeoutError(AutoModeError):
    """Plan wurde nicht rechtzeitig freigegeben."""

    def __init__(self, timeout: float):
        minutes = int(timeout // 60)
        if minutes >= 1:
            text = f"{minutes} minutes"
        else:
            text = f"{timeout:g} seconds"
        super().__init__(
            f"Plan approval timed out after {text} - feature execution cancelled"
        )


class ErrorType(str, Enum):
    """Klassifizierte Fehlerart."""
    AUTHENTICATION = "authentication"
    ABORT = "abort"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXHAUSTED = "quota_exhausted"
    EXECUTION = "execution"
    UNKNOWN = "unknown"


@dataclass
class ErrorInfo:
    """Ergebnis von classify_error."""
    type: ErrorType
    message: str
    is_abort: bool = False
    is_auth: bool = False

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "message": self.message,
            "isAbort": self.is_abort,
            "isAuth": self.is_auth,
        }


def is_authentication_error(message: str) -> bool:
    """Case-sensitive Suche nach bekannten Auth-Fehlertexten."""
    return any(marker in message for marker in AUTH_FAILURE_MARKERS)


def is_abort_error(error: object) -> bool:
    if isinstance(error, (CancellationError, asyncio.CancelledError)):
        return True
    if isinstance(error, BaseException):
        return type(error).__name__ == "AbortError" or "abort" in str(error)
    return False


def _is_rate_limit(message: str) -> bool:
    lowered = message.lower()
    return "rate limit" in lowered or "rate_limit" in lowered or "429" in message


def _is_quota_exhausted(message: str) -> bool:
    lowered = message.lower()
    return "quota" in lowered or "usage limit" in lowered or "credit balance" in lowered


def classify_error(error: object) -> ErrorInfo:
    """
    Klassifiziert einen Fehler.

    Auth hat Vorrang vor Abort, danach Timeout, Rate-Limit und Quota.
    Alles andere ist ein Execution-Fehler. Nicht-Exceptions sind "unknown".
    """
    if not isinstance(error, BaseException):
        return ErrorInfo(type=ErrorType.UNKNOWN, message="Unknown error")

    message = str(error) or type(error).__name__

    if isinstance(error, AuthenticationError) or is_authentication_error(message):
        return ErrorInfo(type=ErrorType.AUTHENTICATION, message=message, is_auth=True)
    if is_abort_error(error):
        return ErrorInfo(type=ErrorType.ABORT, message=message, is_abort=True)
    if isinstance(error, (PhaseTimeoutError, ApprovalTimeoutError, asyncio.TimeoutError)):
        return ErrorInfo(type=ErrorType.TIMEOUT, message=message)
    if _is_quota_exhausted(message):
        return ErrorInfo(type=ErrorType.QUOTA_EXHAUSTED, message=message)
    if _is_rate_limit(message):
        return ErrorInfo(type=ErrorType.RATE_LIMIT, message=message)
    return ErrorInfo(type=ErrorType.EXECUTION, message=message)


def truncate_for_display(message: str, limit: int = MAX_DISPLAY_LENGTH) -> str:
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


def user_friendly_message(error: object) -> str:
    """Message für Toasts in der UI."""
    info = classify_error(error)
    if info.is_abort:
        return "Operation was cancelled"
    if info.is_auth:
        return "Authentication failed. Please check your API key."
    return truncate_for_display(info.message)
