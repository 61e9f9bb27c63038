from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path

from fastapi.testclient import TestClient

from devicehooks.config import settings
from devicehooks.main import app

A = {"Authorization": "Bearer tok-a"}
B = {"Authorization": "Bearer tok-b"}
ROOT = {"Authorization": "Bearer tok-root"}


@contextmanager
def _client(tmp_path: Path, **overrides):
    values = {
        "CACHE_DB_PATH": str(tmp_path / "hooks.db"),
        "STORE_BACKEND": "sqlite",
        "AUTH_BACKEND": "static",
        "API_TOKENS": "tok-a=userA,tok-b=userB,tok-root=root",
        "ADMIN_UIDS": "root",
        "RELAY_SECRET": "",
    }
    values.update(overrides)
    previous = {key: getattr(settings, key) for key in values}
    for key, value in values.items():
        setattr(settings, key, value)
    try:
        with TestClient(app) as client:
            yield client
    finally:
        for key, value in previous.items():
            setattr(settings, key, value)


def _add(client: TestClient, headers=A, event="motion", url="https://x.example/hook", device="dev1"):
    response = client.post(f"/api/webhooks/{device}", json={"event": event, "url": url}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["id"]


def test_create_and_list(tmp_path: Path):
    with _client(tmp_path) as client:
        response = client.post(
            "/api/webhooks/dev1",
            json={"event": "motion", "url": "https://x.example/hook"},
            headers=A,
        )
        listed = client.get("/api/webhooks/dev1", headers=A)

    assert response.status_code == 201
    body = response.json()
    assert body["ok"] is True
    assert body["id"]

    assert listed.status_code == 200
    data = listed.json()
    assert data["ok"] is True
    assert data["temperature"] == []
    [sub] = data["motion"]
    assert sub["id"] == body["id"]
    assert sub["url"] == "https://x.example/hook"
    assert sub["owner"] == "userA"
    assert "createdAt" in sub
    assert "updatedAt" not in sub


def test_create_rejects_bad_bodies(tmp_path: Path):
    with _client(tmp_path) as client:
        missing = client.post("/api/webhooks/dev1", json={"event": "motion"}, headers=A)
        bad_url = client.post(
            "/api/webhooks/dev1", json={"event": "motion", "url": "ftp://x.example/"}, headers=A
        )
        bad_event = client.post(
            "/api/webhooks/dev1", json={"event": "smoke", "url": "https://x.example/"}, headers=A
        )

    for response in (missing, bad_url, bad_event):
        assert response.status_code == 400
        assert response.json()["ok"] is False
        assert response.json()["error"]


def test_requires_bearer_token(tmp_path: Path):
    with _client(tmp_path) as client:
        anonymous = client.get("/api/webhooks/dev1")
        wrong = client.get("/api/webhooks/dev1", headers={"Authorization": "Bearer nope"})
        basic = client.post(
            "/api/webhooks/dev1",
            json={"event": "motion", "url": "https://x.example/"},
            headers={"Authorization": "Basic dXNlcjpwYXNz"},
        )

    assert anonymous.status_code == 401
    assert wrong.status_code == 401
    assert basic.status_code == 401
    assert anonymous.json() == {"ok": False, "error": "missing bearer token"}


def test_list_is_scoped_to_owner_for_non_admins(tmp_path: Path):
    with _client(tmp_path) as client:
        _add(client, A, url="https://a.example/")
        _add(client, B, url="https://b.example/")
        mine = client.get("/api/webhooks/dev1", headers=B).json()
        everything = client.get("/api/webhooks/dev1", headers=ROOT).json()
        empty = client.get("/api/webhooks/unknown", headers=A).json()

    assert [s["url"] for s in mine["motion"]] == ["https://b.example/"]
    assert len(everything["motion"]) == 2
    assert empty == {"ok": True, "motion": [], "temperature": []}


def test_patch_url_and_event(tmp_path: Path):
    with _client(tmp_path) as client:
        sub_id = _add(client)
        renamed = client.patch(
            f"/api/webhooks/dev1/{sub_id}", json={"url": "https://new.example/"}, headers=A
        )
        moved = client.patch(
            f"/api/webhooks/dev1/{sub_id}", json={"event": "temperature"}, headers=ROOT
        )
        listed = client.get("/api/webhooks/dev1", headers=A).json()

    assert renamed.status_code == 200
    assert renamed.json() == {
        "ok": True,
        "updated": {"id": sub_id, "url": "https://new.example/", "owner": "userA", "event": "motion"},
    }
    assert moved.status_code == 200
    assert moved.json()["updated"]["event"] == "temperature"
    assert listed["motion"] == []
    assert [s["id"] for s in listed["temperature"]] == [sub_id]
    assert listed["temperature"][0]["updatedAt"]


def test_patch_errors(tmp_path: Path):
    with _client(tmp_path) as client:
        sub_id = _add(client)
        forbidden = client.patch(
            f"/api/webhooks/dev1/{sub_id}", json={"url": "https://evil.example/"}, headers=B
        )
        missing = client.patch(
            "/api/webhooks/dev1/nope", json={"url": "https://x.example/"}, headers=A
        )
        no_device = client.patch(
            f"/api/webhooks/ghost/{sub_id}", json={"url": "https://x.example/"}, headers=A
        )
        invalid = client.patch(
            f"/api/webhooks/dev1/{sub_id}", json={"url": "mailto:a@b.c"}, headers=A
        )
        bad_event = client.patch(
            f"/api/webhooks/dev1/{sub_id}", json={"event": "rain"}, headers=A
        )
        empty = client.patch(f"/api/webhooks/dev1/{sub_id}", json={}, headers=A)

    assert forbidden.status_code == 403
    assert missing.status_code == 404
    assert no_device.status_code == 404
    assert invalid.status_code == 400
    assert bad_event.status_code == 400
    assert empty.status_code == 400


def test_delete_flow(tmp_path: Path):
    with _client(tmp_path) as client:
        sub_id = _add(client)
        forbidden = client.delete(f"/api/webhooks/dev1/{sub_id}", headers=B)
        still_there = client.get("/api/webhooks/dev1", headers=A).json()
        deleted = client.delete(f"/api/webhooks/dev1/{sub_id}", headers=A)
        again = client.delete(f"/api/webhooks/dev1/{sub_id}", headers=A)
        unknown_device = client.delete("/api/webhooks/ghost/whatever", headers=ROOT)

    assert forbidden.status_code == 403
    assert [s["id"] for s in still_there["motion"]] == [sub_id]
    assert deleted.status_code == 200
    assert deleted.json() == {"ok": True}
    assert again.status_code == 404
    assert unknown_device.status_code == 404


def test_admin_may_delete_any_subscription(tmp_path: Path):
    with _client(tmp_path) as client:
        sub_id = _add(client, A, event="high_temperature")
        response = client.delete(f"/api/webhooks/dev1/{sub_id}", headers=ROOT)
        listed = client.get("/api/webhooks/dev1", headers=ROOT).json()

    assert response.status_code == 200
    assert listed["temperature"] == []


def test_memory_backend(tmp_path: Path):
    with _client(tmp_path, STORE_BACKEND="memory") as client:
        _add(client)
        listed = client.get("/api/webhooks/dev1", headers=A).json()
    assert len(listed["motion"]) == 1
    assert not (tmp_path / "hooks.db").exists()
