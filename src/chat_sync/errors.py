"""
errors.py - Domain-specific exceptions for chat_sync.

All exceptions inherit from ChatSyncError for unified handling.
Each exception type represents a distinct failure mode of the
sync engine, the local store or the transport.
"""

from typing import Any


class ChatSyncError(Exception):
    """Base exception for all chat_sync errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class NetworkError(ChatSyncError):
    """
    Raised when the server cannot be reached or the connection drops.

    Always retryable: the engine leaves local state such that the next
    scheduled invocation can safely retry.
    """

    def __init__(self, message: str, endpoint: str | None = None) -> None:
        context = {}
        if endpoint is not None:
            context["endpoint"] = endpoint
        super().__init__(message, context=context)
        self.endpoint = endpoint


class SyncTimeoutError(NetworkError):
    """
    Raised when a bounded wait is exceeded.

    Treated identically to a network failure by every caller.
    """

    def __init__(self, message: str, timeout: float | None = None) -> None:
        super().__init__(message)
        if timeout is not None:
            self.context["timeout"] = timeout
        self.timeout = timeout


class ServerError(ChatSyncError):
    """
    Raised when the server explicitly rejects a request.

    This includes error frames on the sync stream, non-2xx answers
    to registration and malformed protocol frames.
    """

    def __init__(self, message: str, code: int | None = None) -> None:
        context = {}
        if code is not None:
            context["code"] = code
        super().__init__(message, context=context)
        self.code = code


class LocalStorageError(ChatSyncError):
    """
    Raised when a database operation fails unexpectedly.

    This wraps SQLite errors with additional context about
    what operation was being attempted. Never swallowed: a failed
    write must not be mistaken for a delivered message.
    """

    def __init__(
        self, message: str, operation: str | None = None, sql: str | None = None
    ) -> None:
        context = {}
        if operation is not None:
            context["operation"] = operation
        if sql is not None:
            # Truncate long SQL for readability
            context["sql"] = sql[:200] + "..." if len(sql) > 200 else sql
        super().__init__(message, context=context)
        self.operation = operation
        self.sql = sql


class SchemaError(LocalStorageError):
    """
    Raised when the database schema is missing or has the wrong version.
    """

    def __init__(self, message: str, expected: Any = None, actual: Any = None) -> None:
        super().__init__(message, operation="verify_schema")
        if expected is not None:
            self.context["expected"] = expected
        if actual is not None:
            self.context["actual"] = actual
        self.expected = expected
        self.actual = actual


class ValidationError(ChatSyncError):
    """
    Raised when input validation fails.

    This includes empty chat names or message text, malformed
    UUIDs and entity values that don't meet expected constraints.
    """

    def __init__(
        self, message: str, field: str | None = None, value: Any = None
    ) -> None:
        context = {}
        if field is not None:
            context["field"] = field
        if value is not None:
            context["value"] = repr(value)[:100]
        super().__init__(message, context=context)
        self.field = field
        self.value = value


class NotRegisteredError(ChatSyncError):
    """Raised when an operation needs a registered device identity."""

    def __init__(self, operation: str) -> None:
        super().__init__(
            "Device is not registered",
            context={"operation": operation},
        )
        self.operation = operation


class SyncInProgressError(ChatSyncError):
    """Raised when a sync session is requested while another one is running."""

    def __init__(self) -> None:
        super().__init__("A sync session is already running")


class RegistrationCancelledError(ChatSyncError):
    """Raised when registration is cancelled or exceeds its deadline."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Registration cancelled: {reason}", context={"reason": reason})
        self.reason = reason
