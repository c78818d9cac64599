from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

import streamvault.api.main as api_main
from streamvault.auth.dependencies import get_service
from streamvault.auth.jwt import create_session_token


@pytest.fixture
def client(service):
    api_main.app.dependency_overrides[get_service] = lambda: service
    yield TestClient(api_main.app)
    api_main.app.dependency_overrides.clear()


def _auth(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token(user_id)}"}


def test_health_returns_ok_when_services_are_up(monkeypatch) -> None:
    monkeypatch.setattr(api_main, "test_db_connection", lambda: (True, None))
    monkeypatch.setattr(api_main, "test_redis_connection", lambda: (True, None))

    response = TestClient(api_main.app).get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["services"]["database"]["ok"] is True
    assert payload["services"]["redis"]["ok"] is True
    assert response.headers["x-request-id"]


def test_health_returns_503_when_any_dependency_fails(monkeypatch) -> None:
    monkeypatch.setattr(api_main, "test_db_connection", lambda: (True, None))
    monkeypatch.setattr(api_main, "test_redis_connection", lambda: (False, "redis unavailable"))

    response = TestClient(api_main.app).get("/health")

    assert response.status_code == 503
    assert response.json()["services"]["redis"]["error"] == "redis unavailable"


def test_version_endpoint_echoes_request_id() -> None:
    response = TestClient(api_main.app).get("/version", headers={"x-request-id": "req-123"})

    assert response.status_code == 200
    assert response.json()["name"] == "streamvault"
    assert response.headers["x-request-id"] == "req-123"


def test_metrics_endpoint_returns_prometheus_payload(monkeypatch) -> None:
    monkeypatch.setattr(api_main.settings, "metrics_enabled", True)
    client = TestClient(api_main.app)
    assert client.get("/version").status_code == 200

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    body = response.text
    assert "streamvault_build_info" in body
    assert 'streamvault_http_requests_total{method="GET",path="/version",status="200"}' in body
    assert "streamvault_http_request_duration_seconds_sum" in body


def test_metrics_endpoint_disabled_returns_404(monkeypatch) -> None:
    monkeypatch.setattr(api_main.settings, "metrics_enabled", False)

    assert TestClient(api_main.app).get("/metrics").status_code == 404


def test_token_request_requires_session(client, make_asset) -> None:
    asset_id = make_asset()

    response = client.post("/playback/tokens", json={"asset_id": asset_id})

    assert response.status_code == 401
    assert response.json()["detail"] == "Authentication required"


def test_invalid_session_is_treated_as_anonymous(client, make_asset) -> None:
    asset_id = make_asset()

    response = client.post(
        "/playback/tokens",
        json={"asset_id": asset_id},
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert response.status_code == 401


def test_issue_then_validate_token(client, make_asset) -> None:
    asset_id = make_asset()

    issued = client.post("/playback/tokens", json={"asset_id": asset_id}, headers=_auth("student-1"))

    assert issued.status_code == 200
    payload = issued.json()
    assert payload["asset_id"] == asset_id
    assert payload["permissions"] == {"view": True}
    assert payload["url"] is None

    validated = client.post("/playback/tokens/validate", json={"token": payload["token"], "asset_id": asset_id})

    assert validated.status_code == 200
    body = validated.json()
    assert body["valid"] is True
    assert body["caller_id"] == "student-1"
    assert body["asset_id"] == asset_id


@pytest.mark.parametrize(
    ("status", "collection_id", "caller", "expected_status", "expected_reason"),
    [
        ("ready", "course-101", "outsider-1", 403, "access_denied"),
        ("processing", "course-101", "student-1", 409, "asset_not_ready"),
        ("ready", "course-hidden", "student-1", 403, "access_denied"),
    ],
)
def test_token_refusals_map_to_http_status(
    client, make_asset, status, collection_id, caller, expected_status, expected_reason
) -> None:
    asset_id = make_asset(status=status, collection_id=collection_id)

    response = client.post("/playback/tokens", json={"asset_id": asset_id}, headers=_auth(caller))

    assert response.status_code == expected_status
    assert response.json()["detail"]["reason"] == expected_reason


def test_unknown_asset_returns_404(client) -> None:
    response = client.post("/playback/tokens", json={"asset_id": "missing"}, headers=_auth("student-1"))

    assert response.status_code == 404
    assert response.json()["detail"]["reason"] == "asset_not_found"


def test_signed_url_request(client, make_asset, remote) -> None:
    asset_id = make_asset(remote_id="cf-play")
    remote.put("cf-play", "ready")

    response = client.post(
        "/playback/tokens",
        json={"asset_id": asset_id, "signed_url": True},
        headers=_auth("student-1"),
    )

    assert response.status_code == 200
    assert response.json()["url"].startswith("https://videodelivery.example/")


def test_signed_url_remote_failure_returns_502(client, make_asset) -> None:
    asset_id = make_asset(remote_id="cf-missing")

    response = client.post(
        "/playback/tokens",
        json={"asset_id": asset_id, "signed_url": True},
        headers=_auth("student-1"),
    )

    assert response.status_code == 502
    assert response.json()["detail"]["reason"] == "remote_error"


def test_ip_bound_token_rejected_from_other_address(client, make_asset) -> None:
    asset_id = make_asset()
    token = client.post(
        "/playback/tokens",
        json={"asset_id": asset_id, "bind_ip": True},
        headers={**_auth("student-1"), "x-forwarded-for": "203.0.113.7"},
    ).json()["token"]

    same = client.post("/playback/tokens/validate", json={"token": token}, headers={"x-forwarded-for": "203.0.113.7"})
    other = client.post("/playback/tokens/validate", json={"token": token}, headers={"x-forwarded-for": "198.51.100.1"})

    assert same.status_code == 200
    assert other.status_code == 401
    assert other.json()["detail"]["reason"] == "binding_mismatch"


def test_validate_rejects_garbage(client) -> None:
    response = client.post("/playback/tokens/validate", json={"token": "garbage"})

    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "malformed"


def test_revoke_token(client, make_asset) -> None:
    asset_id = make_asset()
    token = client.post("/playback/tokens", json={"asset_id": asset_id}, headers=_auth("student-1")).json()["token"]

    revoked = client.post("/playback/tokens/revoke", json={"token": token}, headers=_auth("student-1"))

    assert revoked.status_code == 200
    assert revoked.json() == {"revoked": True}
    after = client.post("/playback/tokens/validate", json={"token": token})
    assert after.json()["detail"]["reason"] == "unknown_token"


def test_admin_routes_require_site_admin(client) -> None:
    assert client.get("/admin/queue/stats").status_code == 401
    assert client.get("/admin/queue/stats", headers=_auth("teacher-1")).status_code == 403
    assert client.get("/admin/queue/stats", headers=_auth("admin-1")).status_code == 200


def test_admin_submit_drain_and_reconcile(client, service) -> None:
    asset_id = service.submit_asset(
        owner_id="teacher-1",
        collection_id="course-101",
        size_bytes=10,
        source_ref="/videos/intro.mp4",
    )

    drained = client.post("/admin/queue/drain", json={"batch_size": 10}, headers=_auth("admin-1"))

    assert drained.status_code == 200
    assert drained.json()["report"]["processed"] == 1

    token = client.post("/playback/tokens", json={"asset_id": asset_id}, headers=_auth("student-1"))
    assert token.status_code == 200

    reconciled = client.post("/admin/reconcile", headers=_auth("admin-1"))
    assert reconciled.status_code == 200
    assert reconciled.json()["report"]["healthy"] is True

    stats = client.get("/admin/sync/stats", headers=_auth("admin-1"))
    assert stats.json()["report"]["assets"]["ready"] == 1


def test_admin_drain_rejects_invalid_batch_size(client) -> None:
    response = client.post("/admin/queue/drain", json={"batch_size": 0}, headers=_auth("admin-1"))

    assert response.status_code == 422


def test_admin_reset_asset(client, make_asset) -> None:
    errored = make_asset(status="error", error_message="boom")
    ready = make_asset()

    missing_source = client.post(f"/admin/assets/{errored}/reset", headers=_auth("admin-1"))
    assert missing_source.status_code == 422
    assert missing_source.json()["detail"]["reason"] == "source_unavailable"

    conflict = client.post(f"/admin/assets/{ready}/reset", headers=_auth("admin-1"))
    assert conflict.status_code == 409

    reset = client.post(
        f"/admin/assets/{errored}/reset",
        json={"source_ref": "/videos/retry.mp4"},
        headers=_auth("admin-1"),
    )
    assert reset.status_code == 200
    assert reset.json()["asset_id"] == errored
    assert reset.json()["queue_item_id"] > 0


def test_admin_token_cleanup_and_user_revocation(client, make_asset) -> None:
    asset_id = make_asset()
    client.post("/playback/tokens", json={"asset_id": asset_id}, headers=_auth("student-1"))
    client.post("/playback/tokens", json={"asset_id": asset_id}, headers=_auth("student-1"))

    revoked = client.post("/admin/users/student-1/tokens/revoke", headers=_auth("admin-1"))
    assert revoked.json() == {"user_id": "student-1", "revoked": 2}

    cleanup = client.post("/admin/tokens/cleanup", headers=_auth("admin-1"))
    assert cleanup.status_code == 200
    assert "expired_removed" in cleanup.json()["report"]


def test_admin_source_cleanup_routes(client, make_asset, remote, clock, tmp_path) -> None:
    source = tmp_path / "intro.mp4"
    source.write_bytes(b"\0" * 8)
    make_asset(remote_id="cf-src", ready_at=clock() - timedelta(days=8), source_ref=str(source))
    remote.put("cf-src", "ready")

    assert client.post("/admin/sources/cleanup", headers=_auth("teacher-1")).status_code == 403

    before = client.get("/admin/sources/stats", headers=_auth("admin-1"))
    assert before.json()["report"] == {"ready_for_cleanup": 1, "sources_cleaned": 0}

    cleaned = client.post("/admin/sources/cleanup", headers=_auth("admin-1"))
    assert cleaned.status_code == 200
    assert cleaned.json()["report"]["cleaned"] == 1
    assert source.exists() is False
