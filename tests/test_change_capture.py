"""
test_change_capture.py - Tests for local mutation capture.

Every mutation must land in the record table and the sync queue
together, or not at all.
"""

import sqlite3

import pytest

from conftest import expense_values, goal_values
from finsync.errors import RecordNotFound, TransactionFailure, ValidationError
from finsync.log import sync_queue
from finsync.models import Operation


def queued(store):
    with store.lock:
        return sync_queue.pending_entries(store.connection, 100)


class TestCreate:
    def test_create_writes_row_and_queue_entry(self, store, capture):
        goal = capture.create("savings_goals", goal_values())

        assert store.get("savings_goals", goal.id) == goal
        entries = queued(store)
        assert len(entries) == 1
        assert entries[0].operation is Operation.CREATE
        assert entries[0].payload == goal

    def test_create_stamps_metadata(self, capture, clock):
        goal = capture.create("savings_goals", goal_values())
        assert goal.user_id == "user-1"
        assert goal.created_at == goal.updated_at == clock.value
        assert goal.deleted_at is None

    def test_client_supplied_id_is_kept(self, capture):
        goal = capture.create("savings_goals", goal_values(), record_id="goal-1")
        assert goal.id == "goal-1"

    def test_reused_id_rejected(self, capture):
        capture.create("savings_goals", goal_values(), record_id="goal-1")
        with pytest.raises(ValidationError):
            capture.create("savings_goals", goal_values(), record_id="goal-1")

    def test_metadata_fields_rejected(self, capture):
        with pytest.raises(ValidationError):
            capture.create("savings_goals", goal_values(updated_at=5))

    def test_unknown_table_rejected(self, capture):
        with pytest.raises(ValidationError):
            capture.create("accounts", {"name": "x"})

    def test_missing_required_field_rejected(self, store, capture):
        values = goal_values()
        del values["target_amount"]
        with pytest.raises(ValidationError):
            capture.create("savings_goals", values)
        assert store.count("savings_goals") == 0
        assert queued(store) == []

    def test_child_requires_live_parent(self, capture):
        with pytest.raises(RecordNotFound):
            capture.create(
                "savings_contributions",
                {"goal_id": "missing", "month": "2024-03", "amount": 10.0},
            )


class TestUpdateAndDelete:
    def test_update_bumps_updated_at(self, capture, clock):
        goal = capture.create("savings_goals", goal_values())
        # Clock did not move: updated_at still has to increase
        updated = capture.update("savings_goals", goal.id, {"name": "Rainy day"})
        assert updated.name == "Rainy day"
        assert updated.updated_at == goal.updated_at + 1
        assert updated.created_at == goal.created_at

    def test_update_missing_record(self, capture):
        with pytest.raises(RecordNotFound):
            capture.update("savings_goals", "nope", {"name": "x"})

    def test_delete_is_soft(self, store, capture):
        goal = capture.create("savings_goals", goal_values())
        capture.delete("savings_goals", goal.id)

        assert store.get("savings_goals", goal.id) is None
        tombstone = store.get("savings_goals", goal.id, include_deleted=True)
        assert tombstone is not None
        assert tombstone.deleted_at == tombstone.updated_at

    def test_update_after_delete_rejected(self, capture):
        goal = capture.create("savings_goals", goal_values())
        capture.delete("savings_goals", goal.id)
        with pytest.raises(RecordNotFound):
            capture.update("savings_goals", goal.id, {"name": "late"})

    def test_delete_twice_rejected(self, capture):
        goal = capture.create("savings_goals", goal_values())
        capture.delete("savings_goals", goal.id)
        with pytest.raises(RecordNotFound):
            capture.delete("savings_goals", goal.id)


class TestAtomicity:
    def test_failed_queue_write_rolls_back_row(self, store, capture, monkeypatch):
        """A failure after the row write leaves neither row nor entry."""
        import finsync.capture.change_capture as change_capture

        def broken_enqueue(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(change_capture, "enqueue", broken_enqueue)

        with pytest.raises(TransactionFailure):
            capture.create("expenses", expense_values())

        assert store.count("expenses", include_deleted=True) == 0
        assert queued(store) == []

    def test_failed_update_keeps_previous_state(self, store, capture, monkeypatch):
        import finsync.capture.change_capture as change_capture

        goal = capture.create("savings_goals", goal_values())

        def broken_enqueue(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(change_capture, "enqueue", broken_enqueue)
        with pytest.raises(TransactionFailure):
            capture.update("savings_goals", goal.id, {"name": "changed"})

        assert store.get("savings_goals", goal.id).name == goal.name
        assert queued(store)[0].payload == goal


class TestListeners:
    def test_listener_called_after_commit(self, store, capture):
        seen = []
        capture.add_listener(lambda op, record: seen.append((op, store.get(record.TABLE, record.id))))

        goal = capture.create("savings_goals", goal_values())
        assert seen == [(Operation.CREATE, goal)]

    def test_listener_error_does_not_undo_mutation(self, store, capture):
        def broken(op, record):
            raise RuntimeError("listener bug")

        capture.add_listener(broken)
        goal = capture.create("savings_goals", goal_values())
        assert store.get("savings_goals", goal.id) == goal
