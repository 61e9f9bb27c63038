from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import BackgroundTasks, Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .auth import Principal, build_verifier, require_principal
from .config import reload_settings, settings
from .documents import build_document_store
from .errors import DeviceHooksError, NotFoundError, StorageError
from .logging_setup import init_logging, install_access_log
from .metrics import LAT, REQS, route_template, router as metrics_router
from .ratelimit import limiter
from .relay import EventRelay
from .schema import (
    Ack,
    Created,
    SubscriptionCreate,
    SubscriptionList,
    SubscriptionUpdate,
    Updated,
)
from .store import SubscriptionStore

log = logging.getLogger("devicehooks")


class Health(BaseModel):
    status: str
    time: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    reload_settings()
    documents = build_document_store(
        settings.STORE_BACKEND, settings.CACHE_DB_PATH, settings.STORE_MAX_RETRIES
    )
    store = SubscriptionStore(documents)
    app.state.store = store
    app.state.relay = EventRelay(
        store,
        secret=settings.RELAY_SECRET,
        timeout=settings.RELAY_TIMEOUT_SECONDS,
    )
    app.state.verifier = build_verifier(settings.AUTH_BACKEND)
    log.info(
        "devicehooks ready (store=%s, auth=%s, relay secret %s)",
        settings.STORE_BACKEND,
        settings.AUTH_BACKEND,
        "on" if settings.RELAY_SECRET else "off",
    )
    try:
        yield
    finally:
        documents.close()


init_logging(settings.LOG_LEVEL)

app = FastAPI(title="DeviceHooks", version="0.1.0", lifespan=lifespan)
install_access_log(app)
app.include_router(metrics_router())

origins = [o.strip() for o in settings.CORS_ALLOW_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DeviceHooksError)
async def _domain_error(request: Request, exc: DeviceHooksError):
    if isinstance(exc, StorageError):
        log.error("storage failure on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"ok": False, "error": exc.message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def _request_error(request: Request, exc: RequestValidationError):
    problems = [
        f"{'.'.join(str(part) for part in err.get('loc', ()) if part != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    ]
    return JSONResponse({"ok": False, "error": "; ".join(problems)}, status_code=400)


@app.middleware("http")
async def _metrics_and_rate(request: Request, call_next):
    method = request.method
    start = time.time()
    status_code = 500
    try:
        if settings.RATE_LIMIT_ENABLED:
            client_host = request.client.host if request.client else "unknown"
            if not limiter.allow(client_host, settings.RATE_LIMIT_RPS, settings.RATE_LIMIT_BURST):
                response = JSONResponse({"ok": False, "error": "rate limit"}, status_code=429)
                status_code = response.status_code
                return response
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        path = route_template(request)
        REQS.labels(method, path, str(status_code)).inc()
        LAT.labels(method, path).observe(time.time() - start)


def get_store(request: Request) -> SubscriptionStore:
    return request.app.state.store


def get_relay(request: Request) -> EventRelay:
    return request.app.state.relay


def require_relay_token(request: Request, token: Optional[str] = Query(default=None)) -> None:
    request.app.state.relay.authorize(token)


@app.get("/health", response_model=Health)
def health():
    return Health(status="ok", time=datetime.now(timezone.utc).isoformat())


@app.post("/api/webhooks/{device_id}", response_model=Created, status_code=201)
def add_webhook(
    device_id: str,
    body: SubscriptionCreate,
    principal: Principal = Depends(require_principal),
    store: SubscriptionStore = Depends(get_store),
):
    sub = store.add(device_id, body.event, body.url, principal.uid)
    return Created(id=sub["id"])


@app.patch("/api/webhooks/{device_id}/{sub_id}", response_model=Updated)
def edit_webhook(
    device_id: str,
    sub_id: str,
    body: SubscriptionUpdate,
    principal: Principal = Depends(require_principal),
    store: SubscriptionStore = Depends(get_store),
):
    updated = store.edit(device_id, sub_id, principal, url=body.url, event=body.event)
    return Updated(updated=updated)


@app.delete("/api/webhooks/{device_id}/{sub_id}", response_model=Ack)
def delete_webhook(
    device_id: str,
    sub_id: str,
    principal: Principal = Depends(require_principal),
    store: SubscriptionStore = Depends(get_store),
):
    if not store.delete(device_id, sub_id, principal):
        raise NotFoundError(f"subscription {sub_id} not found")
    return Ack()


@app.get(
    "/api/webhooks/{device_id}",
    response_model=SubscriptionList,
    response_model_exclude_none=True,
)
def list_webhooks(
    device_id: str,
    principal: Principal = Depends(require_principal),
    store: SubscriptionStore = Depends(get_store),
):
    return SubscriptionList(**store.list(device_id, principal))


@app.post(
    "/api/notify/forward/{device_id}",
    response_model=Ack,
    status_code=202,
    dependencies=[Depends(require_relay_token)],
)
async def forward_event(
    device_id: str,
    background: BackgroundTasks,
    payload: Optional[dict] = Body(default=None),
    relay: EventRelay = Depends(get_relay),
):
    # runs after the 202 has been sent
    background.add_task(relay.forward, device_id, payload or {})
    return Ack()
