"""
log - Outbound mutation queue.
"""

from finsync.log.sync_queue import (
    enqueue,
    pending_entries,
    failed_entries,
    count_by_status,
)

__all__ = [
    "enqueue",
    "pending_entries",
    "failed_entries",
    "count_by_status",
]
