import sqlite3
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def client(db, tmp_path, monkeypatch, catalog_yaml):
    from tollgate.daemon.app import app
    from tollgate.daemon.utils.config_loader import config_loader

    config_dir = tmp_path / "http-config"
    config_dir.mkdir()
    (config_dir / "operations.yaml").write_text(catalog_yaml)
    monkeypatch.setattr(config_loader, "config_dir", config_dir)
    monkeypatch.setattr(config_loader, "config_file", config_dir / "operations.yaml")
    monkeypatch.setattr(config_loader, "config", None)
    monkeypatch.delenv("TOLLGATE_IDP_BASE_URL", raising=False)

    with TestClient(app) as test_client:
        yield test_client


def _auth(api_key):
    return {"Authorization": f"Bearer {api_key}"}


class TestHealth:
    def test_liveness(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

    def test_readiness(self, client):
        r = client.get("/ready")
        assert r.status_code == 200
        body = r.json()
        assert body["ready"] is True
        assert body["checks"]["database"]["ok"] is True
        assert "echo" in body["checks"]["config"]["operations"]


class TestOperations:
    def test_requires_api_key(self, client):
        r = client.post("/v1/operations/echo", json={"input": "hi"})
        assert r.status_code == 401
        assert r.json()["error_code"] == "UNAUTHENTICATED"

    def test_invoke_and_read_balance(self, client, make_identity):
        identity, api_key = make_identity(5)

        r = client.post("/v1/operations/echo", json={"input": {"hello": "world"}}, headers=_auth(api_key))

        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["result"] == {"hello": "world"}
        assert body["tokens_consumed"] == 1
        assert r.headers["X-Tollgate-Action-Id"] == body["action_id"]

        balance = client.get("/v1/balance", headers=_auth(api_key))
        assert balance.json() == {"identity_id": identity.identity_id, "balance": 4}

    def test_idempotency_key_header_replays(self, client, make_identity):
        _, api_key = make_identity(5)
        headers = {**_auth(api_key), "Idempotency-Key": "req-1"}

        first = client.post("/v1/operations/echo", json={"input": 1}, headers=headers)
        second = client.post("/v1/operations/echo", json={"input": 1}, headers=headers)

        assert first.json()["action_id"] == second.json()["action_id"]
        assert second.json()["replayed"] is True
        assert client.get("/v1/balance", headers=_auth(api_key)).json()["balance"] == 4

    def test_body_action_id(self, client, make_identity):
        _, api_key = make_identity(5)
        r = client.post("/v1/operations/echo", json={"input": 1, "action_id": "client-42"}, headers=_auth(api_key))
        assert r.json()["action_id"] == "client-42"

    def test_insufficient_balance_is_402(self, client, make_identity):
        _, api_key = make_identity(1)
        r = client.post("/v1/operations/fail", json={}, headers=_auth(api_key))
        assert r.status_code == 402
        assert r.json()["error_code"] == "INSUFFICIENT_BALANCE"

    def test_unknown_operation_is_404(self, client, make_identity):
        _, api_key = make_identity(1)
        r = client.post("/v1/operations/nope", json={}, headers=_auth(api_key))
        assert r.status_code == 404
        assert r.json()["error_code"] == "UNKNOWN_OPERATION"

    def test_deactivated_key_is_403(self, client, make_identity):
        _, api_key = make_identity(5, deactivated=True)
        r = client.get("/v1/balance", headers=_auth(api_key))
        assert r.status_code == 403
        assert r.json() == {
            "error_code": "IDENTITY_DEACTIVATED",
            "detail": "Identity not found or account deactivated",
        }


class TestSessions:
    def test_unknown_session(self, client):
        r = client.post("/v1/sessions/validate", json={"session_token": "nope"})
        assert r.status_code == 401
        assert r.json() == {"valid": False, "reason": "NO_SESSION"}

    def test_valid_session_then_revoke(self, client, make_identity):
        from tollgate.daemon.app.lifecycle import get_session_store

        identity, _ = make_identity(1)
        session = get_session_store().create_session(identity.identity_id, email="u@example.com")

        r = client.post("/v1/sessions/validate", json={"session_token": session.session_token})
        assert r.status_code == 200
        assert r.json()["identity_id"] == identity.identity_id

        revoked = client.post("/v1/sessions/revoke", json={"session_token": session.session_token})
        assert revoked.json() == {"revoked": True}
        again = client.post("/v1/sessions/validate", json={"session_token": session.session_token})
        assert again.status_code == 401

    def test_store_failure_is_typed_without_driver_text(self, client):
        with patch(
            "tollgate.daemon.auth.sessions.get_db_connection",
            side_effect=sqlite3.OperationalError("no such table: sessions"),
        ):
            r = client.post("/v1/sessions/validate", json={"session_token": "tok"})

        assert r.status_code == 503
        assert r.json()["error_code"] == "PERSISTENCE_FAILED"
        assert "no such table" not in r.text
