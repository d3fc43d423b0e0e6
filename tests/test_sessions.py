import asyncio
import sqlite3
from unittest.mock import patch

import httpx
import pytest

from tollgate.daemon.auth import sessions as sessions_module
from tollgate.daemon.auth.provider import (
    HttpIdentityProvider,
    ProviderUnavailable,
    RefreshGrant,
    RefreshRejected,
)
from tollgate.daemon.auth.sessions import SessionReason, SessionStore
from tollgate.daemon.db import get_db_connection
from tollgate.daemon.errors import PersistenceFailed, StorageUnavailable
from tollgate.daemon.ledger.retry import RetryPolicy

DAY_MS = 24 * 60 * 60 * 1000
DURATION = 30 * DAY_MS
T0 = 1_700_000_000_000


class Clock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeProvider:
    def __init__(self, error: Exception | None = None):
        self.calls: list[str] = []
        self.error = error

    async def refresh_session(self, refresh_credential: str) -> RefreshGrant:
        self.calls.append(refresh_credential)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        return RefreshGrant(access_token=f"access-{n}", refresh_credential=f"{refresh_credential}-next{n}")


def _store(provider=None, clock=None):
    return SessionStore(provider, clock=clock or Clock(), duration_ms=DURATION)


def _expired_session(store: SessionStore, clock: Clock, token: str, refresh: str | None = "r1"):
    """A session whose logical expiry passed while its storage TTL is still live."""
    return store.create_session(
        "user-1",
        email="user@example.com",
        refresh_credential=refresh,
        session_token=token,
        expires_at=clock.now - 1,
    )


class TestValidateAndRefresh:
    def test_valid_session_slides_storage_ttl(self, db):
        clock = Clock()
        store = _store(clock=clock)
        store.create_session("user-1", session_token="tok")

        clock.now += 60_000
        result = asyncio.run(store.validate_and_refresh("tok"))

        assert result.valid is True
        assert result.reason is None
        assert result.session.last_accessed_at == clock.now
        assert result.session.store_expires_at == clock.now + DURATION
        assert result.session.expires_at == T0 + DURATION

    def test_unknown_and_empty_tokens_have_no_session(self, db):
        store = _store()
        assert asyncio.run(store.validate_and_refresh("nope")).reason == SessionReason.NO_SESSION
        assert asyncio.run(store.validate_and_refresh("")).reason == SessionReason.NO_SESSION

    def test_storage_ttl_lapse_looks_like_no_session(self, db):
        clock = Clock()
        store = _store(clock=clock)
        store.create_session("user-1", session_token="tok", refresh_credential="r1")

        clock.now += DURATION
        result = asyncio.run(store.validate_and_refresh("tok"))

        assert result.valid is False
        assert result.reason == SessionReason.NO_SESSION
        with get_db_connection() as conn:
            assert conn.execute("SELECT 1 FROM sessions WHERE session_token = 'tok'").fetchone() is None

    def test_expired_session_is_refreshed_and_credential_rotated(self, db):
        clock = Clock()
        provider = FakeProvider()
        store = _store(provider, clock)
        old = _expired_session(store, clock, "tok")

        result = asyncio.run(store.validate_and_refresh("tok"))

        assert result.valid is True
        assert result.session.expires_at == clock.now + DURATION
        assert result.session.expires_at > old.expires_at
        assert result.session.refresh_credential == "r1-next1"
        assert provider.calls == ["r1"]

        # The refreshed session validates without another exchange.
        again = asyncio.run(store.validate_and_refresh("tok"))
        assert again.valid is True
        assert provider.calls == ["r1"]

    def test_reusing_a_consumed_refresh_credential_fails(self, db):
        clock = Clock()
        provider = FakeProvider()
        store = _store(provider, clock)
        _expired_session(store, clock, "tok")
        assert asyncio.run(store.validate_and_refresh("tok")).valid is True

        # A stale copy still carrying the old credential.
        _expired_session(store, clock, "stale", refresh="r1")
        result = asyncio.run(store.validate_and_refresh("stale"))

        assert result.valid is False
        assert result.reason == SessionReason.REFRESH_FAILED
        assert provider.calls == ["r1"]

    def test_concurrent_refreshes_exchange_once(self, db):
        clock = Clock()
        provider = FakeProvider()
        store = _store(provider, clock)
        _expired_session(store, clock, "tok")

        async def _both():
            return await asyncio.gather(
                store.validate_and_refresh("tok"),
                store.validate_and_refresh("tok"),
            )

        results = asyncio.run(_both())

        # One exchange only; a loser either fails or sees the already refreshed session.
        assert len(provider.calls) == 1
        assert any(r.valid for r in results)
        for r in results:
            if r.valid:
                assert r.session.refresh_credential == "r1-next1"
            else:
                assert r.reason == SessionReason.REFRESH_FAILED
        with get_db_connection() as conn:
            row = conn.execute("SELECT refresh_credential FROM sessions WHERE session_token = 'tok'").fetchone()
        assert row["refresh_credential"] == "r1-next1"


    def test_refresh_chain_expiry_strictly_increases(self, db):
        clock = Clock()
        provider = FakeProvider()
        store = _store(provider, clock)
        previous = _expired_session(store, clock, "tok").expires_at
        credentials = []

        for step in range(3):
            clock.now += (step + 1) * 60_000
            # The access token handed over at login or refresh has lapsed.
            with get_db_connection() as conn:
                conn.execute("UPDATE sessions SET expires_at = ? WHERE session_token = 'tok'", (clock.now - 1,))
                conn.commit()

            result = asyncio.run(store.validate_and_refresh("tok"))

            assert result.valid is True
            assert result.session.expires_at > previous
            assert result.session.expires_at == clock.now + DURATION
            previous = result.session.expires_at
            credentials.append(result.session.refresh_credential)

        assert provider.calls == ["r1", "r1-next1", "r1-next1-next2"]
        assert len(set(credentials)) == 3

    def test_provider_rejection_is_refresh_failed(self, db):
        clock = Clock()
        store = _store(FakeProvider(error=RefreshRejected("revoked")), clock)
        _expired_session(store, clock, "tok")

        result = asyncio.run(store.validate_and_refresh("tok"))

        assert result.valid is False
        assert result.reason == SessionReason.REFRESH_FAILED

    def test_unexpected_provider_errors_propagate(self, db):
        clock = Clock()
        store = _store(FakeProvider(error=RuntimeError("bug")), clock)
        _expired_session(store, clock, "tok")

        with pytest.raises(RuntimeError):
            asyncio.run(store.validate_and_refresh("tok"))

    def test_expired_without_refresh_credential_is_terminal(self, db):
        clock = Clock()
        store = _store(FakeProvider(), clock)
        _expired_session(store, clock, "tok", refresh=None)

        result = asyncio.run(store.validate_and_refresh("tok"))
        assert result.reason == SessionReason.EXPIRED

    def test_no_provider_configured(self, db):
        clock = Clock()
        store = _store(None, clock)
        _expired_session(store, clock, "tok")

        assert asyncio.run(store.validate_and_refresh("tok")).reason == SessionReason.REFRESH_FAILED

    def test_revoke(self, db):
        store = _store()
        store.create_session("user-1", session_token="tok")
        assert store.revoke_session("tok") is True
        assert store.revoke_session("tok") is False
        assert asyncio.run(store.validate_and_refresh("tok")).reason == SessionReason.NO_SESSION


class TestHttpIdentityProvider:
    def _refresh(self, handler):
        async def _run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                provider = HttpIdentityProvider("https://idp.example", "client_123", "sk_test", client=client)
                return await provider.refresh_session("r1")

        return asyncio.run(_run())

    def test_successful_exchange(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"access_token": "at", "refresh_token": "r2", "expires_in": 300})

        grant = self._refresh(handler)

        assert grant.refresh_credential == "r2"
        assert grant.access_token == "at"
        assert grant.expires_in_seconds == 300
        assert seen["url"] == "https://idp.example/user_management/authenticate"
        assert seen["auth"] == "Bearer sk_test"

    def test_client_error_is_rejection(self):
        with pytest.raises(RefreshRejected):
            self._refresh(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))

    def test_server_error_is_unavailable(self):
        with pytest.raises(ProviderUnavailable):
            self._refresh(lambda request: httpx.Response(503))

    def test_malformed_body_is_unavailable(self):
        with pytest.raises(ProviderUnavailable):
            self._refresh(lambda request: httpx.Response(200, json={"access_token": "at"}))

    def test_transport_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProviderUnavailable):
            self._refresh(handler)

    def test_from_env_requires_settings(self, monkeypatch):
        monkeypatch.delenv("TOLLGATE_IDP_BASE_URL", raising=False)
        monkeypatch.delenv("TOLLGATE_IDP_CLIENT_ID", raising=False)
        with pytest.raises(RuntimeError):
            HttpIdentityProvider.from_env()


class TestSessionStorageErrors:
    def _locked(self):
        return patch(
            "tollgate.daemon.auth.sessions.get_db_connection",
            side_effect=sqlite3.OperationalError("database is locked"),
        )

    def test_locked_store_is_storage_unavailable(self, db):
        store = _store()
        with self._locked():
            with pytest.raises(StorageUnavailable):
                store._load("tok", T0)
            with pytest.raises(StorageUnavailable):
                store.revoke_session("tok")

    def test_validation_retries_then_fails_typed(self, db, no_sleep):
        store = SessionStore(
            None,
            clock=Clock(),
            duration_ms=DURATION,
            policy=RetryPolicy(max_attempts=3, base_delay=0.01),
            sleep=no_sleep,
        )
        with self._locked() as mock_conn:
            with pytest.raises(PersistenceFailed):
                asyncio.run(store.validate_and_refresh("tok"))

        assert mock_conn.call_count == 3
        assert no_sleep.delays == [0.01, 0.02]

    def test_transient_lock_recovers(self, db, no_sleep):
        clock = Clock()
        store = SessionStore(
            None,
            clock=clock,
            duration_ms=DURATION,
            policy=RetryPolicy(max_attempts=3, base_delay=0.01),
            sleep=no_sleep,
        )
        store.create_session("user-1", session_token="tok")
        real = sessions_module.get_db_connection
        calls = {"n": 0}

        def _flaky():
            calls["n"] += 1
            if calls["n"] == 1:
                raise sqlite3.OperationalError("database is locked")
            return real()

        with patch("tollgate.daemon.auth.sessions.get_db_connection", side_effect=_flaky):
            result = asyncio.run(store.validate_and_refresh("tok"))

        assert result.valid is True
        assert no_sleep.delays == [0.01]

    def test_non_transient_error_is_persistence_failed(self, db):
        store = _store()
        with patch(
            "tollgate.daemon.auth.sessions.get_db_connection",
            side_effect=sqlite3.OperationalError("no such table: sessions"),
        ):
            with pytest.raises(PersistenceFailed):
                store.create_session("user-1", session_token="tok")
