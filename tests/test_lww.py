"""
test_lww.py - Tests for last-writer-wins resolution.
"""

import dataclasses

import pytest

from finsync.errors import ValidationError
from finsync.models import Expense
from finsync.resolution import remote_supersedes, resolve


def expense(updated_at, record_id="e-1", note="x"):
    return Expense(id=record_id, created_at=1, updated_at=updated_at, amount=1.0, date="2024-01-01", note=note)


class TestResolve:
    def test_newer_remote_wins(self):
        result = resolve(expense(10), expense(11, note="remote"))
        assert result.remote_wins
        assert result.winner.note == "remote"

    def test_newer_local_wins(self):
        local = expense(12, note="local")
        result = resolve(local, expense(11))
        assert not result.remote_wins
        assert result.winner is local

    def test_tie_goes_to_remote(self):
        assert resolve(expense(10, note="local"), expense(10, note="remote")).winner.note == "remote"

    def test_missing_local(self):
        assert resolve(None, expense(5)).remote_wins

    def test_whole_record_wins(self):
        local = dataclasses.replace(expense(10), amount=99.0, note="local note")
        remote = dataclasses.replace(expense(20), amount=1.0)
        assert resolve(local, remote).winner == remote

    def test_different_records_rejected(self):
        with pytest.raises(ValidationError):
            resolve(expense(1, record_id="a"), expense(2, record_id="b"))

    def test_remote_supersedes_queued_payload(self):
        assert remote_supersedes(expense(5), expense(5))
        assert not remote_supersedes(expense(6), expense(5))
