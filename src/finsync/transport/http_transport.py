"""
http_transport.py - HTTP client for the remote authority.

Speaks the JSON protocol of the reference server:
- POST /sync/push - Send one mutation
- GET  /sync/pull - Fetch records changed since a watermark
- GET  /sync/health - Liveness
"""

import logging
from typing import Any

import httpx

from finsync.errors import PermanentSyncFailure, TransientSyncFailure
from finsync.models import Operation
from finsync.transport.base import PushResult, PushStatus, RemoteAuthority

logger = logging.getLogger(__name__)

# Status codes retried with backoff besides 5xx
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


class HTTPRemote(RemoteAuthority):
    """
    RemoteAuthority over HTTP using httpx.AsyncClient.

    Args:
        base_url: Server root, e.g. "https://api.example.com"
        auth_token: Optional bearer token
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (e.g. httpx.ASGITransport
            for in-process testing)
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "HTTP"

    async def push(
        self,
        table_name: str,
        record_id: str,
        operation: Operation,
        payload: dict[str, Any],
    ) -> PushResult:
        body = {
            "table_name": table_name,
            "record_id": record_id,
            "operation": operation.value,
            "payload": payload,
        }
        response = await self._request("POST", "/sync/push", table_name, record_id, json=body)
        if response.status_code == 409:
            return PushResult(PushStatus.CONFLICT, self._json(response, table_name, record_id).get("record"))
        self._raise_for_status(response, table_name, record_id)
        data = self._json(response, table_name, record_id)
        return PushResult(PushStatus(data.get("status", "applied")), data.get("record"))

    async def pull(self, table_name: str, since: int) -> list[dict[str, Any]]:
        response = await self._request(
            "GET",
            "/sync/pull",
            table_name,
            params={"table_name": table_name, "since": since},
        )
        self._raise_for_status(response, table_name)
        return self._json(response, table_name).get("records", [])

    async def health(self) -> bool:
        try:
            response = await self._client.get("/sync/health")
            response.raise_for_status()
            return response.json().get("status") == "ok"
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Health check against {self._base_url} failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        table_name: str,
        record_id: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientSyncFailure(f"Request timed out: {e}", table_name, record_id) from e
        except httpx.TransportError as e:
            raise TransientSyncFailure(f"Network error: {e}", table_name, record_id) from e

    def _raise_for_status(self, response: httpx.Response, table_name: str, record_id: str | None = None) -> None:
        code = response.status_code
        if code < 400:
            return
        detail = _error_detail(response)
        if code >= 500 or code in RETRYABLE_STATUS_CODES:
            raise TransientSyncFailure(f"Server busy or failing: {detail}", table_name, record_id, code)
        raise PermanentSyncFailure(f"Rejected by remote: {detail}", table_name, record_id, code)

    def _json(self, response: httpx.Response, table_name: str, record_id: str | None = None) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise TransientSyncFailure(
                f"Malformed response body: {e}", table_name, record_id, response.status_code
            ) from e
        if not isinstance(data, dict):
            raise TransientSyncFailure("Malformed response body", table_name, record_id, response.status_code)
        return data


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict) and "detail" in data:
        return str(data["detail"])
    return str(data)[:200]
