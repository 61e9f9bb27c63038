from __future__ import annotations

import json
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from devicehooks.logging_setup import install_access_log


def _app() -> FastAPI:
    app = FastAPI()
    install_access_log(app)

    @app.get("/boom")
    def _boom() -> None:
        raise RuntimeError("boom")

    @app.get("/ping")
    def _ping() -> dict:
        return {"pong": True}

    return app


def test_request_id_header_on_error() -> None:
    with TestClient(_app(), raise_server_exceptions=False) as client:
        response = client.get("/boom")

    assert response.status_code == 500
    assert response.headers["X-Request-ID"]
    assert response.json() == {"ok": False, "error": "internal server error"}


def test_error_response_echoes_inbound_request_id() -> None:
    with TestClient(_app(), raise_server_exceptions=False) as client:
        response = client.get("/boom", headers={"X-Request-ID": "req-9"})

    assert response.status_code == 500
    assert response.headers["X-Request-ID"] == "req-9"


def test_inbound_request_id_is_echoed() -> None:
    with TestClient(_app()) as client:
        response = client.get("/ping", headers={"X-Request-ID": "abc-123"})

    assert response.headers["X-Request-ID"] == "abc-123"


def test_access_record_redacts_credentials(caplog) -> None:
    with caplog.at_level(logging.INFO, logger="devicehooks.access"):
        with TestClient(_app()) as client:
            client.get("/ping?token=s3cret&x=1", headers={"Authorization": "Bearer tok"})

    [record] = [json.loads(r.getMessage()) for r in caplog.records if r.name == "devicehooks.access"]
    assert record["status"] == 200
    assert record["path"] == "/ping"
    assert record["query"] == "token=<redacted>&x=1"
    assert record["headers"]["authorization"] == "<redacted>"
