"""
errors.py - Domain-specific exceptions for finsync.

All exceptions inherit from FinSyncError for unified handling.
Each exception type represents a distinct failure mode.
"""

from typing import Any


class FinSyncError(Exception):
    """Base exception for all finsync errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class ValidationError(FinSyncError):
    """
    Raised when input validation fails.

    This includes missing required record fields, wrong value types,
    malformed cron expressions and bad HH:MM times.
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


class DatabaseError(FinSyncError):
    """
    Raised when a database operation fails unexpectedly.

    This wraps SQLite errors with additional context about
    what operation was being attempted.
    """

    def __init__(
        self, message: str, operation: str | None = None, sql: str | None = None
    ) -> None:
        context = {}
        if operation is not None:
            context["operation"] = operation
        if sql is not None:
            context["sql"] = sql[:200] + "..." if len(sql) > 200 else sql
        super().__init__(message, context=context)
        self.operation = operation
        self.sql = sql


class TransactionFailure(DatabaseError):
    """
    Raised when a local write could not commit.

    The transaction has been rolled back in full: no row change and no
    queue entry is visible. The caller must retry the user action.
    """


class RecordNotFound(FinSyncError):
    """Raised when a live record does not exist locally."""

    def __init__(self, table_name: str, record_id: str) -> None:
        super().__init__(
            "Record not found",
            context={"table_name": table_name, "record_id": record_id},
        )
        self.table_name = table_name
        self.record_id = record_id


class SyncFailure(FinSyncError):
    """Base class for failures talking to the remote authority."""

    def __init__(
        self,
        message: str,
        table_name: str | None = None,
        record_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        context = {}
        if table_name is not None:
            context["table_name"] = table_name
        if record_id is not None:
            context["record_id"] = record_id
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(message, context=context)
        self.table_name = table_name
        self.record_id = record_id
        self.status_code = status_code


class TransientSyncFailure(SyncFailure):
    """
    Network error, timeout or server-busy response.

    Retried automatically with backoff. Never surfaced to the user unless
    the attempt ceiling is crossed (see SyncStalled).
    """


class PermanentSyncFailure(SyncFailure):
    """
    The remote authority rejected a mutation as invalid.

    The queue entry is kept but excluded from automatic retries until the
    user resolves it.
    """


class SyncStalled(FinSyncError):
    """
    A queue entry kept failing transiently past the attempt ceiling.

    Reported for user awareness only; local edits are never blocked.
    """

    def __init__(self, table_name: str, record_id: str, attempts: int, last_error: str | None) -> None:
        super().__init__(
            f"Sync stalled after {attempts} attempts",
            context={
                "table_name": table_name,
                "record_id": record_id,
                "last_error": last_error,
            },
        )
        self.table_name = table_name
        self.record_id = record_id
        self.attempts = attempts
        self.last_error = last_error


class UnschedulableRule(FinSyncError):
    """
    Raised when a cron rule combined with quiet hours cannot produce a
    fire time within the bounded search.
    """

    def __init__(self, message: str, cron: str | None = None, notification_type: str | None = None) -> None:
        context = {}
        if cron is not None:
            context["cron"] = cron
        if notification_type is not None:
            context["notification_type"] = notification_type
        super().__init__(message, context=context)
        self.cron = cron
        self.notification_type = notification_type
