"""
test_transport.py - Tests for the HTTP remote and the reference server.
"""

import asyncio
import inspect
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import START_MICROS, goal_values
from finsync.engine import SyncEngine
from finsync.errors import PermanentSyncFailure, TransientSyncFailure
from finsync.metrics import push_total
from finsync.models import Operation
from finsync.server.app import create_app
from finsync.transport.base import PushStatus
from finsync.transport.http_transport import HTTPRemote

TOKEN = "secret-token"


def goal_payload(record_id="goal-1", updated_at=START_MICROS, **fields):
    payload = {
        "id": record_id,
        "user_id": "user-1",
        "created_at": START_MICROS,
        "updated_at": updated_at,
        "deleted_at": None,
        "privacy_level": "private",
        **goal_values(),
    }
    payload.update(fields)
    return payload


def push_body(payload, operation="CREATE", table_name="savings_goals"):
    return {
        "table_name": table_name,
        "record_id": payload["id"],
        "operation": operation,
        "payload": payload,
    }


@pytest.fixture
def client(remote_store):
    app = create_app(store=remote_store, token=TOKEN)
    with TestClient(app) as client:
        client.headers["Authorization"] = f"Bearer {TOKEN}"
        yield client


class TestServer:
    def test_health(self, client):
        response = client.get("/sync/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_token_required(self, remote_store):
        with TestClient(create_app(store=remote_store, token=TOKEN)) as anonymous:
            response = anonymous.post("/sync/push", json=push_body(goal_payload()))
        assert response.status_code == 401

    def test_push_then_pull(self, client):
        response = client.post("/sync/push", json=push_body(goal_payload()))
        assert response.status_code == 200
        assert response.json()["status"] == "applied"

        pulled = client.get("/sync/pull", params={"table_name": "savings_goals", "since": 0}).json()
        assert pulled["count"] == 1
        assert pulled["records"][0]["id"] == "goal-1"

        stamp = pulled["records"][0]["server_updated_at"]
        later = client.get("/sync/pull", params={"table_name": "savings_goals", "since": stamp}).json()
        assert later["count"] == 0

    def test_replayed_push_is_idempotent(self, client, remote_store):
        body = push_body(goal_payload())
        client.post("/sync/push", json=body)
        response = client.post("/sync/push", json=body)

        assert response.status_code == 200
        assert remote_store.count("savings_goals") == 1

    def test_older_push_conflicts(self, client):
        client.post("/sync/push", json=push_body(goal_payload(updated_at=START_MICROS + 10, name="newer")))
        response = client.post(
            "/sync/push",
            json=push_body(goal_payload(updated_at=START_MICROS + 5, name="older"), operation="UPDATE"),
        )

        assert response.status_code == 409
        assert response.json()["record"]["name"] == "newer"

    def test_unknown_table_rejected(self, client):
        response = client.post("/sync/push", json=push_body(goal_payload(), table_name="accounts"))
        assert response.status_code == 400

    def test_invalid_payload_rejected(self, client):
        response = client.post("/sync/push", json=push_body(goal_payload(target_amount="lots")))
        assert response.status_code == 400

    def test_orphan_child_rejected(self, client):
        contribution = {
            "id": "c-1",
            "created_at": START_MICROS,
            "updated_at": START_MICROS,
            "goal_id": "missing",
            "month": "2024-03",
            "amount": 5.0,
        }
        response = client.post("/sync/push", json=push_body(contribution, table_name="savings_contributions"))
        assert response.status_code == 400

    def test_negative_since_rejected(self, client):
        response = client.get("/sync/pull", params={"table_name": "savings_goals", "since": -1})
        assert response.status_code == 422

    def test_metrics_export(self, client):
        push_total.inc(operation="CREATE", outcome="applied")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "finsync_push_total" in response.text

    def test_database_routes_run_off_the_event_loop(self, remote_store):
        app = create_app(store=remote_store, token=TOKEN)
        endpoints = {route.path: route.endpoint for route in app.routes if hasattr(route, "endpoint")}

        for path in ("/sync/health", "/sync/push", "/sync/pull"):
            assert not inspect.iscoroutinefunction(endpoints[path]), path

    def test_concurrent_pushes_from_worker_threads(self, client, remote_store):
        bodies = [push_body(goal_payload(record_id=f"goal-{n}")) for n in range(8)]
        with ThreadPoolExecutor(max_workers=4) as pool:
            statuses = list(pool.map(lambda body: client.post("/sync/push", json=body).status_code, bodies))

        assert statuses == [200] * 8
        assert remote_store.count("savings_goals") == 8
        stamps = [row["server_updated_at"] for row in remote_store.pull("savings_goals", 0)]
        assert len(set(stamps)) == 8


class TestHTTPRemote:
    def test_sync_through_asgi_app(self, store, capture, remote_store):
        app = create_app(store=remote_store, token=TOKEN)
        remote = HTTPRemote(
            "http://testserver",
            auth_token=TOKEN,
            transport=httpx.ASGITransport(app=app),
        )
        goal = capture.create("savings_goals", goal_values())

        async def scenario():
            try:
                return await SyncEngine(store, remote).sync()
            finally:
                await remote.close()

        report = asyncio.run(scenario())

        assert report.pull_error is None
        assert report.drain.applied == 1
        assert remote_store.get("savings_goals", goal.id)["name"] == goal.name

    def test_conflict_response(self):
        def handler(request):
            return httpx.Response(409, json={"status": "conflict", "record": {"id": "goal-1"}})

        result = asyncio.run(self._push(handler))
        assert result.status is PushStatus.CONFLICT
        assert result.record == {"id": "goal-1"}

    @pytest.mark.parametrize("code", [500, 502, 503, 408, 429])
    def test_retryable_status_is_transient(self, code):
        def handler(request):
            return httpx.Response(code, json={"detail": "busy"})

        with pytest.raises(TransientSyncFailure):
            asyncio.run(self._push(handler))

    @pytest.mark.parametrize("code", [400, 401, 404, 422])
    def test_client_error_is_permanent(self, code):
        def handler(request):
            return httpx.Response(code, json={"detail": "bad"})

        with pytest.raises(PermanentSyncFailure) as info:
            asyncio.run(self._push(handler))
        assert info.value.status_code == code

    def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientSyncFailure):
            asyncio.run(self._push(handler))

    def test_malformed_body_is_transient(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>")

        with pytest.raises(TransientSyncFailure):
            asyncio.run(self._push(handler))

    @staticmethod
    async def _push(handler):
        remote = HTTPRemote("http://remote", transport=httpx.MockTransport(handler))
        try:
            return await remote.push("savings_goals", "goal-1", Operation.CREATE, goal_payload())
        finally:
            await remote.close()

    def test_health_through_asgi_app(self, remote_store):
        app = create_app(store=remote_store, token=TOKEN)

        async def scenario():
            remote = HTTPRemote("http://testserver", auth_token=TOKEN, transport=httpx.ASGITransport(app=app))
            try:
                return await remote.health()
            finally:
                await remote.close()

        assert asyncio.run(scenario()) is True

    def test_health_false_when_unavailable(self):
        def handler(request):
            return httpx.Response(503, json={"detail": "down"})

        async def scenario():
            remote = HTTPRemote("http://remote", transport=httpx.MockTransport(handler))
            try:
                return await remote.health()
            finally:
                await remote.close()

        assert asyncio.run(scenario()) is False
