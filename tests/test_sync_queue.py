"""
test_sync_queue.py - Tests for queue coalescing and ordering.
"""

import pytest

from conftest import expense_values, goal_values
from finsync.errors import ValidationError
from finsync.log import sync_queue
from finsync.models import Operation, QueueStatus


def entries(store):
    with store.lock:
        return sync_queue.pending_entries(store.connection, 100)


class TestCoalescing:
    def test_create_then_update_stays_create(self, store, capture):
        goal = capture.create("savings_goals", goal_values())
        updated = capture.update("savings_goals", goal.id, {"target_amount": 2000.0})

        queue = entries(store)
        assert len(queue) == 1
        assert queue[0].operation is Operation.CREATE
        assert queue[0].payload == updated
        assert queue[0].created_at == goal.created_at

    def test_create_then_delete_drops_entry(self, store, capture):
        goal = capture.create("savings_goals", goal_values())
        capture.delete("savings_goals", goal.id)
        assert entries(store) == []

    def test_attempted_create_then_delete_becomes_delete(self, store, capture):
        goal = capture.create("savings_goals", goal_values())
        entry = entries(store)[0]
        store.transaction(lambda conn: sync_queue.record_failure(conn, entry.id, "timeout", store.now()))

        capture.delete("savings_goals", goal.id)
        queue = entries(store)
        assert len(queue) == 1
        assert queue[0].operation is Operation.DELETE
        assert queue[0].attempts == 1

    def test_in_flight_create_then_delete_becomes_delete(self, store, capture):
        goal = capture.create("savings_goals", goal_values())
        entry = entries(store)[0]
        store.transaction(lambda conn: sync_queue.mark_in_flight(conn, entry.id, store.now()))

        deleted = capture.delete("savings_goals", goal.id)
        queue = entries(store)
        assert [e.operation for e in queue] == [Operation.DELETE]
        assert queue[0].payload == deleted
        assert queue[0].attempts == 0

    def test_requeued_create_then_delete_becomes_delete(self, store, capture):
        goal = capture.create("savings_goals", goal_values())
        entry = entries(store)[0]
        store.transaction(lambda conn: sync_queue.mark_failed(conn, entry.id, "rejected", store.now()))
        store.transaction(lambda conn: sync_queue.requeue_failed(conn))

        capture.delete("savings_goals", goal.id)
        assert [e.operation for e in entries(store)] == [Operation.DELETE]

    def test_update_then_update_keeps_latest_payload(self, store, capture):
        goal = capture.create("savings_goals", goal_values())
        store.transaction(lambda conn: sync_queue.discard_for_record(conn, "savings_goals", goal.id))

        capture.update("savings_goals", goal.id, {"name": "first"})
        second = capture.update("savings_goals", goal.id, {"name": "second"})

        queue = entries(store)
        assert len(queue) == 1
        assert queue[0].operation is Operation.UPDATE
        assert queue[0].payload == second

    def test_update_then_delete_becomes_delete(self, store, capture):
        goal = capture.create("savings_goals", goal_values())
        store.transaction(lambda conn: sync_queue.discard_for_record(conn, "savings_goals", goal.id))

        capture.update("savings_goals", goal.id, {"name": "first"})
        deleted = capture.delete("savings_goals", goal.id)

        queue = entries(store)
        assert [e.operation for e in queue] == [Operation.DELETE]
        assert queue[0].payload == deleted

    def test_edit_on_queued_delete_rejected(self, store, capture):
        goal = capture.create("savings_goals", goal_values())
        store.transaction(lambda conn: sync_queue.discard_for_record(conn, "savings_goals", goal.id))
        deleted = capture.delete("savings_goals", goal.id)

        with pytest.raises(ValidationError):
            store.transaction(
                lambda conn: sync_queue.enqueue(conn, Operation.UPDATE, deleted, None, store.now())
            )

    def test_coalesced_edit_revives_failed_entry(self, store, capture):
        goal = capture.create("savings_goals", goal_values())
        entry = entries(store)[0]
        store.transaction(lambda conn: sync_queue.mark_failed(conn, entry.id, "rejected", store.now()))
        assert entries(store) == []

        capture.update("savings_goals", goal.id, {"name": "fixed"})
        queue = entries(store)
        assert len(queue) == 1
        assert queue[0].status is QueueStatus.PENDING
        assert queue[0].attempts == 1


class TestOrdering:
    def test_fifo_by_creation(self, store, capture, clock):
        first = capture.create("expenses", expense_values(note="first"))
        clock.advance(1)
        second = capture.create("expenses", expense_values(note="second"))
        clock.advance(1)
        # Updating the first record keeps its place in line
        capture.update("expenses", first.id, {"note": "first, edited"})

        assert [e.record_id for e in entries(store)] == [first.id, second.id]

    def test_keyset_pagination(self, store, capture, clock):
        ids = []
        for n in range(5):
            ids.append(capture.create("expenses", expense_values(note=str(n))).id)
            clock.advance(1)

        seen = []
        after = None
        with store.lock:
            while True:
                page = sync_queue.pending_entries(store.connection, 2, after)
                if not page:
                    break
                seen.extend(e.record_id for e in page)
                after = (page[-1].created_at, page[-1].id)
        assert seen == ids

    def test_count_by_status(self, store, capture):
        capture.create("expenses", expense_values())
        other = capture.create("expenses", expense_values())
        entry = [e for e in entries(store) if e.record_id == other.id][0]
        store.transaction(lambda conn: sync_queue.mark_failed(conn, entry.id, "bad", store.now()))

        with store.lock:
            counts = sync_queue.count_by_status(store.connection)
        assert counts == {"pending": 1, "failed": 1}
