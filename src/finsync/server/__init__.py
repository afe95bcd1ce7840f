"""
server - Reference remote authority.
"""

from finsync.server.remote_store import RemoteStore

__all__ = [
    "RemoteStore",
]
