"""
Custom Exception Hierarchy

Structured exceptions for consistent error handling across the gateway.
Duplicates are not errors: they are reported through ``StoreStatus.DUPLICATE``.
"""
import asyncio
from typing import Any
from enum import Enum

from sqlalchemy.exc import (
    DBAPIError,
    DataError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    TimeoutError as PoolTimeoutError,
)


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    RATE_LIMITED = "ERR_1006"

    # Webhook errors (2xxx)
    WEBHOOK_UNAUTHENTICATED = "ERR_2001"
    WEBHOOK_MALFORMED_PAYLOAD = "ERR_2002"
    WEBHOOK_UNSUPPORTED_SOURCE = "ERR_2003"

    # Storage errors (3xxx)
    STORAGE_TRANSIENT_FAILURE = "ERR_3001"
    STORAGE_PERMANENT_FAILURE = "ERR_3002"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class WebhookException(AppException):
    """Base exception for rejected deliveries"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int,
        source: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if source:
            self.details["source"] = source


class WebhookAuthenticationError(WebhookException):
    """Signature missing, invalid or expired. Never retried."""

    def __init__(self, source: str, reason: str):
        super().__init__(
            message=f"Webhook authentication failed: {reason}",
            error_code=ErrorCode.WEBHOOK_UNAUTHENTICATED,
            status_code=401,
            source=source,
            details={"reason": reason}
        )
        self.reason = reason


class MalformedPayloadError(WebhookException):
    """Body could not be decoded or lacks required envelope fields"""

    def __init__(self, source: str, reason: str, field: str | None = None):
        super().__init__(
            message=f"Malformed {source} payload: {reason}",
            error_code=ErrorCode.WEBHOOK_MALFORMED_PAYLOAD,
            status_code=400,
            source=source,
            details={"reason": reason}
        )
        if field:
            self.details["field"] = field


class UnsupportedSourceError(WebhookException):
    """Delivery addressed to a provider the gateway does not know"""

    def __init__(self, source: str):
        super().__init__(
            message=f"Unsupported webhook source: {source}",
            error_code=ErrorCode.WEBHOOK_UNSUPPORTED_SOURCE,
            status_code=404,
            details={"source": source, "supported": ["github", "linear", "slack"]}
        )


class StorageFailureError(AppException):
    """A write to the event store failed.

    ``transient`` errors (connection loss, timeouts, deadlocks) are worth
    retrying; permanent ones (constraint or data errors other than the
    ``event_hash`` uniqueness) are not expected to heal.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=(
                ErrorCode.STORAGE_TRANSIENT_FAILURE if transient
                else ErrorCode.STORAGE_PERMANENT_FAILURE
            ),
            status_code=503 if transient else 500,
            details=details
        )
        self.transient = transient

    @property
    def kind(self) -> str:
        return "transient" if self.transient else "permanent"


class BatchStorageError(StorageFailureError):
    """A batch transaction failed as a whole.

    Carries the result of chunks that did commit before the failure and the
    events that were not stored, so the caller can requeue exactly those.
    """

    def __init__(
        self,
        message: str,
        *,
        unstored: list,
        partial_result: Any = None,
        transient: bool = True
    ):
        super().__init__(
            message=message,
            transient=transient,
            details={"unstored_count": len(unstored)}
        )
        self.unstored = unstored
        self.partial_result = partial_result


_TRANSIENT_PGCODES = frozenset({
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "57014",  # query_canceled (statement timeout)
    "53300",  # too_many_connections
})


def classify_storage_error(exc: BaseException) -> StorageFailureError:
    """Map a driver/SQLAlchemy/asyncio error onto a transient or permanent failure"""
    if isinstance(exc, StorageFailureError):
        return exc

    message = f"{type(exc).__name__}: {exc}"

    if isinstance(exc, (PoolTimeoutError, asyncio.TimeoutError, OSError)):
        return StorageFailureError(message, transient=True)

    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return StorageFailureError(message, transient=True)
        pgcode = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
        if pgcode in _TRANSIENT_PGCODES:
            return StorageFailureError(message, transient=True, details={"sqlstate": pgcode})
        if isinstance(exc, (IntegrityError, DataError, ProgrammingError)):
            return StorageFailureError(message, transient=False, details={"sqlstate": pgcode})
        if isinstance(exc, (OperationalError, InterfaceError)):
            return StorageFailureError(message, transient=True, details={"sqlstate": pgcode})

    return StorageFailureError(message, transient=False)
