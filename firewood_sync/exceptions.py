"""
Custom exceptions for firewood sync.

Client, server and storage components raise these exceptions
for consistent error handling across the sync subsystem.
"""


class FirewoodSyncError(Exception):
    """Base exception for all firewood sync errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StorageIOError(FirewoodSyncError):
    """Raised when a storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class SyncError(FirewoodSyncError):
    """Raised when a sync round fails."""

    def __init__(self, message: str, entity_id: str | None = None, cause: Exception | None = None):
        details: dict = {}
        if entity_id:
            details["entity_id"] = entity_id
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.entity_id = entity_id
        self.cause = cause


class TransportError(FirewoodSyncError):
    """Raised when the sync server cannot be reached or answers with an error.

    Covers offline clients, timeouts and non-success HTTP statuses. A round
    that hits this error is always safe to retry.
    """

    def __init__(
        self,
        endpoint: str,
        status: int | None = None,
        cause: Exception | None = None,
        reason: str | None = None,
    ):
        details: dict = {"endpoint": endpoint}
        if status is not None:
            details["status"] = status
        if cause:
            details["cause"] = str(cause)
        if reason:
            details["reason"] = reason
        message = f"Request to {endpoint} failed"
        if status is not None:
            message += f" with status {status}"
        if reason:
            message += f": {reason}"
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status = status
        self.cause = cause
        self.reason = reason


class AuthenticationError(FirewoodSyncError):
    """Raised when the caller of the sync endpoint cannot be authenticated."""

    def __init__(self, reason: str | None = None):
        details = {}
        if reason:
            details["reason"] = reason
        super().__init__(f"Authentication failed: {reason or 'no credentials'}", details)
        self.reason = reason


class ValidationError(FirewoodSyncError):
    """Raised when wire data cannot be coerced into an entity."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value
