"""Error taxonomy surfaced to the presentation layer."""

from enum import Enum
from typing import Any

LOGIN_REQUIRED_MESSAGE = "Login required."


class ErrorCategory(Enum):
    """Closed set of failure categories."""

    TRANSIENT_NETWORK = "transient_network"
    CREDENTIAL = "credential"
    AUTHORIZATION = "authorization"
    SERVER = "server"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    GENERIC = "generic"


class Tone(Enum):
    """How the message should be presented."""

    ERROR = "error"
    WARNING = "warning"


class SyncError(Exception):
    """Base class for every classified failure.

    Attributes:
        message: Stable user-facing message.
        status: HTTP status code, if the failure came from a response.
        detail: Raw error text or exception description, for logs only.
    """

    category = ErrorCategory.GENERIC
    tone = Tone.ERROR

    def __init__(
        self,
        message: str,
        status: int | None = None,
        detail: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.TRANSIENT_NETWORK

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "message": self.message,
            "tone": self.tone.value,
            "status": self.status,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status={self.status})"


class TransientNetworkError(SyncError):
    category = ErrorCategory.TRANSIENT_NETWORK


class CredentialError(SyncError):
    category = ErrorCategory.CREDENTIAL


class AuthorizationError(SyncError):
    category = ErrorCategory.AUTHORIZATION


class ServerError(SyncError):
    category = ErrorCategory.SERVER


class ConflictError(SyncError):
    category = ErrorCategory.CONFLICT
    tone = Tone.WARNING


class ValidationError(SyncError):
    category = ErrorCategory.VALIDATION


class RequestFailedError(SyncError):
    category = ErrorCategory.GENERIC


ERROR_TYPES: dict[ErrorCategory, type[SyncError]] = {
    ErrorCategory.TRANSIENT_NETWORK: TransientNetworkError,
    ErrorCategory.CREDENTIAL: CredentialError,
    ErrorCategory.AUTHORIZATION: AuthorizationError,
    ErrorCategory.SERVER: ServerError,
    ErrorCategory.CONFLICT: ConflictError,
    ErrorCategory.VALIDATION: ValidationError,
    ErrorCategory.GENERIC: RequestFailedError,
}


def error_for(
    category: ErrorCategory,
    message: str,
    status: int | None = None,
    detail: str | None = None,
) -> SyncError:
    """Build the exception class matching ``category``."""
    return ERROR_TYPES[category](message, status=status, detail=detail)

