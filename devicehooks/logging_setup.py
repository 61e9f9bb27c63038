"""Logging configuration and the JSON access-log middleware."""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Callable

from starlette.applications import Starlette
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

access_log = logging.getLogger("devicehooks.access")

SENSITIVE_HEADERS = {"authorization"}
SENSITIVE_QUERY_KEYS = {"token"}

_REQUEST_ID_SCOPE_KEY = "devicehooks.request_id"


def init_logging(level: str = "INFO"):
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )


def _req_id(req: Request) -> str:
    return req.headers.get("x-request-id") or str(uuid.uuid4())


def _redact_headers(headers: dict[str, str]) -> dict[str, str]:
    return {
        key: ("<redacted>" if key.lower() in SENSITIVE_HEADERS else value)
        for key, value in headers.items()
    }


def _redact_query(req: Request) -> str:
    # the relay secret travels as ?token=
    parts = [
        f"{key}=<redacted>" if key in SENSITIVE_QUERY_KEYS else f"{key}={value}"
        for key, value in req.query_params.multi_items()
    ]
    return "&".join(parts)


class AccessLogMiddleware(BaseHTTPMiddleware):
    """One JSON access record per request; sets `X-Request-ID` on the response."""

    async def dispatch(self, request: Request, call_next: Callable):  # type: ignore[override]
        request_id = _req_id(request)
        start = time.time()
        status = 500
        error: str | None = None
        response: Response | None = None
        request.scope[_REQUEST_ID_SCOPE_KEY] = request_id
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        except Exception as exc:
            error = repr(exc)
            raise
        finally:
            record = {
                "msg": "access",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "query": _redact_query(request),
                "status": status,
                "duration_ms": int((time.time() - start) * 1000),
                "client_ip": request.client.host if request.client else None,
                "headers": _redact_headers(
                    {
                        key: value
                        for key, value in request.headers.items()
                        if key.lower() in {"authorization", "user-agent"}
                    }
                ),
            }
            if error:
                record["error"] = error
                access_log.error(json.dumps(record))
            else:
                access_log.info(json.dumps(record))
            if response is not None:
                response.headers["X-Request-ID"] = request_id


async def server_error(request: Request, exc: Exception) -> JSONResponse:
    """Outermost 500 response; echoes the request ID the access log assigned."""

    headers = {}
    request_id = request.scope.get(_REQUEST_ID_SCOPE_KEY)
    if request_id:
        headers["X-Request-ID"] = request_id
    return JSONResponse({"ok": False, "error": "internal server error"}, status_code=500, headers=headers)


def install_access_log(app: Starlette) -> None:
    app.add_middleware(AccessLogMiddleware)
    app.add_exception_handler(Exception, server_error)
