"""
resolution - Conflict resolution.
"""

from finsync.resolution.lww_merge import Resolution, resolve, remote_supersedes

__all__ = [
    "Resolution",
    "resolve",
    "remote_supersedes",
]
