"""
app.py - Reference remote authority over HTTP (FastAPI).

Endpoints:
- GET  /sync/health - Liveness and database check
- POST /sync/push   - Apply one mutation (409 on conflict)
- GET  /sync/pull   - Records of a table changed after a watermark
- GET  /metrics     - Prometheus text export

When FINSYNC_SERVER_TOKEN is set (or a token is passed to create_app),
sync endpoints require "Authorization: Bearer <token>".
"""

import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from finsync.errors import FinSyncError, ValidationError
from finsync.metrics import HealthChecker, check_database, get_registry
from finsync.models import Operation
from finsync.server.remote_store import RemoteStore
from finsync.transport.base import PushStatus

logger = logging.getLogger(__name__)

DB_PATH_ENV = "FINSYNC_SERVER_DB"
TOKEN_ENV = "FINSYNC_SERVER_TOKEN"


class PushRequest(BaseModel):
    table_name: str
    record_id: str
    operation: Literal["CREATE", "UPDATE", "DELETE"]
    payload: dict[str, Any]


class PushResponse(BaseModel):
    status: Literal["applied", "conflict"]
    record: dict[str, Any] | None = None


class PullResponse(BaseModel):
    table_name: str
    records: list[dict[str, Any]] = Field(default_factory=list)
    count: int = 0


def get_remote_store(request: Request) -> RemoteStore:
    return request.app.state.remote_store


def verify_token(request: Request, authorization: str | None = Header(default=None)) -> None:
    expected = request.app.state.token
    if not expected:
        return
    scheme, _, supplied = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(supplied, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid bearer token",
        )


def create_app(store: RemoteStore | None = None, token: str | None = None) -> FastAPI:
    """
    Build the server application.

    Args:
        store: Remote store to serve; opened from FINSYNC_SERVER_DB
            (default "finsync_server.db") at startup when omitted
        token: Bearer token; defaults to FINSYNC_SERVER_TOKEN
    """
    owns_store = store is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.remote_store is None:
            db_path = os.environ.get(DB_PATH_ENV, "finsync_server.db")
            logger.info(f"Starting finsync server with DB: {db_path}")
            app.state.remote_store = RemoteStore(db_path)
        yield
        if owns_store and app.state.remote_store is not None:
            app.state.remote_store.close()
            app.state.remote_store = None

    app = FastAPI(title="finsync remote authority", lifespan=lifespan)
    app.state.remote_store = store
    app.state.token = token if token is not None else os.environ.get(TOKEN_ENV)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(FinSyncError)
    async def finsync_error_handler(request: Request, exc: FinSyncError):
        logger.error(f"Request failed: {exc}")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})

    @app.get("/sync/health")
    def health(remote_store: RemoteStore = Depends(get_remote_store)):
        checker = HealthChecker()
        checker.register_check("database", lambda: check_database(remote_store.connection))
        with remote_store.lock:
            result = checker.check_all()
        body = {"status": "ok" if result.healthy else "degraded", "checks": result.checks}
        return JSONResponse(status_code=200 if result.healthy else 503, content=body)

    @app.post("/sync/push", response_model=PushResponse, dependencies=[Depends(verify_token)])
    def push(body: PushRequest, remote_store: RemoteStore = Depends(get_remote_store)):
        result = remote_store.push(
            body.table_name,
            body.record_id,
            Operation(body.operation),
            body.payload,
        )
        if result.status is PushStatus.CONFLICT:
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={"status": result.status.value, "record": result.record},
            )
        return PushResponse(status=result.status.value, record=result.record)

    @app.get("/sync/pull", response_model=PullResponse, dependencies=[Depends(verify_token)])
    def pull(
        table_name: str,
        since: int = Query(default=0, ge=0),
        remote_store: RemoteStore = Depends(get_remote_store),
    ):
        records = remote_store.pull(table_name, since)
        return PullResponse(table_name=table_name, records=records, count=len(records))

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        return get_registry().export_prometheus()

    return app
