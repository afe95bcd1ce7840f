"""
memory.py - In-process remote authority.

Wraps a RemoteStore directly, without HTTP. Used by tests and local
demos; faults can be injected to exercise retry and cancellation paths.
"""

import asyncio
from collections import deque
from typing import Any

from finsync.errors import PermanentSyncFailure, SyncFailure, TransientSyncFailure, ValidationError
from finsync.models import Operation
from finsync.server.remote_store import RemoteStore
from finsync.transport.base import PushResult, RemoteAuthority


class InMemoryRemote(RemoteAuthority):
    """
    RemoteAuthority backed by an in-process RemoteStore.

    Fault injection:
        online: When False every call raises TransientSyncFailure
        fail_next(): Queue failures raised by the next pushes
        gate: If set, pushes wait on this event before reaching the store
        latency: Seconds every push sleeps before reaching the store
    """

    def __init__(self, store: RemoteStore | None = None):
        self.store = store if store is not None else RemoteStore()
        self.online = True
        self.latency = 0.0
        self.gate: asyncio.Event | None = None
        self.pushes: list[tuple[str, str, Operation]] = []
        self._faults: deque[tuple[type[SyncFailure], str]] = deque()

    @property
    def name(self) -> str:
        return "memory"

    def fail_next(self, count: int = 1, permanent: bool = False, message: str = "injected failure") -> None:
        for _ in range(count):
            cls = PermanentSyncFailure if permanent else TransientSyncFailure
            self._faults.append((cls, message))

    async def push(
        self,
        table_name: str,
        record_id: str,
        operation: Operation,
        payload: dict[str, Any],
    ) -> PushResult:
        self.pushes.append((table_name, record_id, operation))
        self._check_online(table_name, record_id)
        if self._faults:
            cls, message = self._faults.popleft()
            raise cls(message, table_name, record_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.latency:
            await asyncio.sleep(self.latency)
        try:
            return self.store.push(table_name, record_id, operation, payload)
        except ValidationError as e:
            raise PermanentSyncFailure(f"Rejected by remote: {e}", table_name, record_id) from e

    async def pull(self, table_name: str, since: int) -> list[dict[str, Any]]:
        self._check_online(table_name)
        try:
            return self.store.pull(table_name, since)
        except ValidationError as e:
            raise PermanentSyncFailure(f"Rejected by remote: {e}", table_name) from e

    async def health(self) -> bool:
        return self.online

    def _check_online(self, table_name: str, record_id: str | None = None) -> None:
        if not self.online:
            raise TransientSyncFailure("Remote unreachable", table_name, record_id)
