"""
transport - Remote authority adapters.

InMemoryRemote lives in finsync.transport.memory; it depends on the
server package and is imported from there directly.
"""

from finsync.transport.base import PushResult, PushStatus, RemoteAuthority
from finsync.transport.http_transport import HTTPRemote

__all__ = [
    "PushResult",
    "PushStatus",
    "RemoteAuthority",
    "HTTPRemote",
]
