"""
base.py - Abstract base class for the remote authority.

The sync engine talks to exactly one remote authority. Implementations
must map every failure onto TransientSyncFailure (retry later) or
PermanentSyncFailure (the remote rejected the mutation).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from finsync.models import Operation

# Key under which pulled rows carry the remote's own change stamp
SERVER_STAMP_FIELD = "server_updated_at"


class PushStatus(str, Enum):
    """Outcome of a push the remote accepted for processing."""
    APPLIED = "applied"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class PushResult:
    """
    Result of pushing one queue entry.

    `record` is the authoritative version held by the remote after the
    push (the applied record, or the newer version that won a conflict).
    """
    status: PushStatus
    record: dict[str, Any] | None = None


class RemoteAuthority(ABC):
    """
    Single remote store that arbitrates synced state.

    Records travel as plain dicts carrying every field of the record
    variant, sync metadata included.
    """

    @abstractmethod
    async def push(
        self,
        table_name: str,
        record_id: str,
        operation: Operation,
        payload: dict[str, Any],
    ) -> PushResult:
        """
        Send one mutation.

        Raises:
            TransientSyncFailure: Network error, timeout, server busy
            PermanentSyncFailure: The remote rejected the mutation
        """

    @abstractmethod
    async def pull(self, table_name: str, since: int) -> list[dict[str, Any]]:
        """
        Records of `table_name` the remote stored after its change stamp
        `since`, tombstones included, in ascending stamp order.

        Each row carries its stamp under SERVER_STAMP_FIELD. Stamps are
        assigned by the remote and strictly increase with every stored
        write, so they are independent of device clocks; pass the last one
        seen as the next `since`.

        Raises:
            TransientSyncFailure: Network error, timeout, server busy
            PermanentSyncFailure: The request was rejected
        """

    async def health(self) -> bool:
        """Whether the remote is reachable."""
        return True

    async def close(self) -> None:
        """Release any connections."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Remote name for logging."""
