"""
lww_merge.py - Record-level Last-Write-Wins (LWW) resolution.

Two versions of the same record are compared on updated_at only. The
higher timestamp wins the whole record; on a tie the remote version wins,
so every device converges on what the remote authority holds. There is
no field-level merge.
"""

from dataclasses import dataclass

from finsync.errors import ValidationError
from finsync.models import SyncableRecord


@dataclass(frozen=True)
class Resolution:
    """Outcome of comparing a local and a remote version."""
    winner: SyncableRecord
    remote_wins: bool
    reason: str


def resolve(local: SyncableRecord | None, remote: SyncableRecord) -> Resolution:
    """
    Pick the winning version of one record.

    Args:
        local: Local version, or None if the record is unknown locally
        remote: Remote version

    Returns:
        Resolution naming the winner

    Raises:
        ValidationError: If the two versions are not the same record
    """
    if local is None:
        return Resolution(remote, True, "Remote wins (no local version)")

    if local.TABLE != remote.TABLE or local.id != remote.id:
        raise ValidationError(
            "Cannot resolve versions of different records",
            field="id",
            value=f"{local.TABLE}/{local.id} vs {remote.TABLE}/{remote.id}",
        )

    if remote.updated_at >= local.updated_at:
        return Resolution(
            remote,
            True,
            f"Remote wins (updated_at: {remote.updated_at} >= {local.updated_at})",
        )
    return Resolution(
        local,
        False,
        f"Local wins (updated_at: {local.updated_at} > {remote.updated_at})",
    )


def remote_supersedes(payload: SyncableRecord, remote: SyncableRecord) -> bool:
    """Whether a remote version overrides a queued local payload (ties to remote)."""
    return resolve(payload, remote).remote_wins
