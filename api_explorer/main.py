from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from api_explorer import schemas
from api_explorer.config import get_settings
from api_explorer.credentials import CredentialManager, RevalidationScheduler, SqlCredentialStore
from api_explorer.db import SessionLocal, get_session, init_db
from api_explorer.openapi_doc import ApiSpecError, load_api_spec
from api_explorer.relay import (
    BODY_METHODS,
    CORS_HEADERS,
    RELAY_METHODS,
    ForwardingRelay,
    ForwardResponse,
    MissingPathError,
    parse_forward_request,
)

logger = logging.getLogger("api_explorer.api")
RELAY_ROUTE = "/api/proxy"
_upstream_transport: httpx.BaseTransport | None = None
_BODYLESS_STATUSES = {204, 304}


def _validate_runtime_configuration(settings) -> None:
    safety_errors = settings.production_safety_errors()
    if not safety_errors:
        return

    for error in safety_errors:
        logger.error("unsafe_production_config error=%s", error)
    raise RuntimeError("Unsafe production configuration; see logs for details")


def _relay_http_status(outcome: ForwardResponse) -> int:
    if outcome.is_transport_failure:
        return 500
    if outcome.status < 200 or outcome.status in _BODYLESS_STATUSES:
        return 200
    return outcome.status


def _get_relay(request: Request) -> ForwardingRelay | None:
    return getattr(request.app.state, "relay", None)


def _get_credential_manager(request: Request) -> CredentialManager:
    manager = getattr(request.app.state, "credential_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Credential manager not ready")
    return manager


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    _validate_runtime_configuration(settings)
    init_db()

    relay = ForwardingRelay(
        base_url=settings.upstream_base_url,
        timeout=settings.upstream_timeout_sec,
        transport=_upstream_transport,
    )
    manager = CredentialManager(
        relay=relay,
        store=SqlCredentialStore(session_factory=SessionLocal),
        storage_key=settings.credential_storage_key,
        check_path=settings.credential_check_path,
        freshness_sec=settings.credential_freshness_sec,
    )
    app.state.relay = relay
    app.state.credential_manager = manager

    scheduler: RevalidationScheduler | None = None
    await run_in_threadpool(manager.load)
    if settings.credential_scheduler_enabled:
        scheduler = RevalidationScheduler(
            manager=manager,
            interval_sec=settings.credential_revalidate_interval_sec,
        )
        scheduler.start()
        logger.info("Credential revalidation scheduler started")

    logger.info("API Explorer startup complete upstream=%s", relay.base_url)
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()
            logger.info("Credential revalidation scheduler stopped")
        app.state.relay = None
        app.state.credential_manager = None


app = FastAPI(
    title="API Explorer",
    version="0.1.0",
    description=(
        "Interactive documentation explorer backend: relays try-it-out requests "
        "to the upstream API and manages the cached access token."
    ),
    lifespan=lifespan,
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", "").strip() or uuid.uuid4().hex
    start = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (time.perf_counter() - start) * 1000.0
        logger.exception(
            "request_failed method=%s path=%s request_id=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            request_id,
            duration_ms,
        )
        raise

    duration_ms = (time.perf_counter() - start) * 1000.0
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_completed method=%s path=%s status=%s request_id=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        request_id,
        duration_ms,
    )
    return response


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/live")
def health_live() -> dict[str, str]:
    return {"status": "live"}


@app.get("/health/ready")
def health_ready(db: Session = Depends(get_session)) -> dict[str, str]:
    try:
        db.execute(text("SELECT 1"))
    except Exception:
        raise HTTPException(status_code=503, detail="Database not ready")
    return {"status": "ready"}


@app.api_route(RELAY_ROUTE, methods=list(RELAY_METHODS), include_in_schema=False)
async def relay_proxy(request: Request) -> Response:
    method = request.method.upper()
    if method == "OPTIONS":
        return Response(status_code=200, headers=dict(CORS_HEADERS))

    body = await request.body() if method in BODY_METHODS else None
    try:
        forward_request = parse_forward_request(
            method=method,
            raw_query=request.url.query,
            headers=request.headers,
            body=body,
        )
    except MissingPathError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)}, headers=dict(CORS_HEADERS))

    relay = _get_relay(request)
    if relay is None:
        logger.error("relay_not_initialized path=%s", forward_request.path)
        outcome = ForwardResponse.network_error("Relay is not initialized")
    else:
        outcome = await run_in_threadpool(relay.forward, forward_request)
    return JSONResponse(
        status_code=_relay_http_status(outcome),
        content=outcome.to_envelope(),
        headers=dict(CORS_HEADERS),
    )


@app.get("/api/token", response_model=schemas.CredentialStatusRead)
def get_token_status(request: Request) -> schemas.CredentialStatusRead:
    manager = _get_credential_manager(request)
    return schemas.CredentialStatusRead.from_snapshot(manager.snapshot())


@app.put("/api/token", response_model=schemas.CredentialStatusRead)
def set_token(payload: schemas.TokenUpdate, request: Request) -> schemas.CredentialStatusRead:
    manager = _get_credential_manager(request)
    manager.set_token(payload.token)
    return schemas.CredentialStatusRead.from_snapshot(manager.snapshot())


@app.post("/api/token/validate", response_model=schemas.CredentialStatusRead)
def validate_token(request: Request) -> schemas.CredentialStatusRead:
    manager = _get_credential_manager(request)
    if not manager.token:
        raise HTTPException(status_code=409, detail="No token configured")
    manager.validate()
    return schemas.CredentialStatusRead.from_snapshot(manager.snapshot())


@app.delete("/api/token", response_model=schemas.CredentialStatusRead)
def clear_token(request: Request) -> schemas.CredentialStatusRead:
    manager = _get_credential_manager(request)
    manager.clear()
    return schemas.CredentialStatusRead.from_snapshot(manager.snapshot())


@app.get("/swagger.json", include_in_schema=False)
def api_spec_document() -> JSONResponse:
    settings = get_settings()
    try:
        document = load_api_spec(
            settings.api_spec_path,
            server_url=settings.api_spec_server_url,
            description=settings.api_spec_server_description,
        )
    except ApiSpecError as exc:
        logger.error("api_spec_unavailable error=%s", exc)
        raise HTTPException(status_code=503, detail="Failed to load API specification")
    return JSONResponse(content=document)
