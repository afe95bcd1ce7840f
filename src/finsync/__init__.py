"""
finsync - Local-first data layer for personal finance goals

Captures offline mutations into a durable queue, reconciles them with a
remote authority by last-writer-wins, and schedules goal notifications
from cron rules.
"""

from finsync.capture import ChangeCapture
from finsync.config import SyncConfig
from finsync.engine import DrainResult, PullResult, SyncEngine, SyncReport
from finsync.errors import (
    FinSyncError,
    PermanentSyncFailure,
    RecordNotFound,
    SyncFailure,
    SyncStalled,
    TransactionFailure,
    TransientSyncFailure,
    UnschedulableRule,
    ValidationError,
)
from finsync.store import RecordStore

__version__ = "0.3.0"
__all__ = [
    # Core
    "RecordStore",
    "ChangeCapture",
    "SyncEngine",
    "SyncConfig",
    "DrainResult",
    "PullResult",
    "SyncReport",
    # Errors
    "FinSyncError",
    "ValidationError",
    "TransactionFailure",
    "RecordNotFound",
    "SyncFailure",
    "TransientSyncFailure",
    "PermanentSyncFailure",
    "SyncStalled",
    "UnschedulableRule",
]
