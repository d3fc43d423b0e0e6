"""Session store with sliding storage TTL and automatic refresh.

States: Absent, Valid, Expired-Refreshable, Expired-Terminal.
``validate_and_refresh`` never raises for an unknown or expired token; the
outcome is a typed ``SessionValidation``. Unknown tokens and records whose
storage TTL lapsed are indistinguishable (``NO_SESSION``).
"""

from __future__ import annotations

import asyncio
import os
import secrets
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any, Awaitable, Callable

from ..db import get_db_connection
from ..errors import GatewayError
from ..ledger.balance import storage_failure
from ..ledger.retry import RetryPolicy, retry_storage
from ..utils.logging_config import StructuredLogger
from .hashing import hash_token
from .provider import IdentityProvider, IdentityProviderError

logger = StructuredLogger(__name__)

DEFAULT_SESSION_DAYS = 30
_DAY_MS = 24 * 60 * 60 * 1000


def session_duration_ms() -> int:
    days = float(os.getenv("TOLLGATE_SESSION_DAYS", str(DEFAULT_SESSION_DAYS)))
    return int(days * _DAY_MS)


def _now_ms() -> int:
    return int(time.time() * 1000)


class SessionReason(StrEnum):
    NO_SESSION = "NO_SESSION"
    EXPIRED = "EXPIRED"
    REFRESH_FAILED = "REFRESH_FAILED"


@dataclass(frozen=True)
class SessionRecord:
    session_token: str
    identity_id: str
    email: str | None
    issued_at: int
    expires_at: int
    last_accessed_at: int
    refresh_credential: str | None
    store_expires_at: int


@dataclass(frozen=True)
class SessionValidation:
    valid: bool
    session: SessionRecord | None = None
    reason: SessionReason | None = None


_SESSION_COLUMNS = """
    session_token, identity_id, email, issued_at, expires_at,
    last_accessed_at, refresh_credential, store_expires_at
"""


@contextmanager
def _session_storage(message: str, **fields):
    """Replace driver errors with StorageUnavailable or PersistenceFailed."""
    try:
        yield
    except GatewayError:
        raise
    except Exception as exc:
        raise storage_failure(exc, message, **fields) from exc


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        session_token=row["session_token"],
        identity_id=row["identity_id"],
        email=row["email"],
        issued_at=int(row["issued_at"]),
        expires_at=int(row["expires_at"]),
        last_accessed_at=int(row["last_accessed_at"]),
        refresh_credential=row["refresh_credential"],
        store_expires_at=int(row["store_expires_at"]),
    )


class SessionStore:
    def __init__(
        self,
        provider: IdentityProvider | None = None,
        *,
        clock: Callable[[], int] = _now_ms,
        duration_ms: int | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.provider = provider
        self._clock = clock
        self.duration_ms = duration_ms if duration_ms is not None else session_duration_ms()
        self.policy = policy
        self._sleep = sleep

    # --- storage primitives (blocking) ---

    def _load(self, token: str, now: int) -> SessionRecord | None:
        with _session_storage("Session load failed"), get_db_connection() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_token = ?",
                (token,),
            ).fetchone()
            if row is None:
                return None
            record = _row_to_session(row)
            if record.store_expires_at <= now:
                # Storage TTL lapsed: the record is gone as far as callers can tell.
                conn.execute(
                    "DELETE FROM sessions WHERE session_token = ? AND store_expires_at <= ?",
                    (token, now),
                )
                conn.commit()
                return None
            return record

    def _touch(self, record: SessionRecord) -> None:
        with _session_storage("Session touch failed", identity=record.identity_id), get_db_connection() as conn:
            conn.execute(
                """
                UPDATE sessions SET last_accessed_at = ?, store_expires_at = ?
                WHERE session_token = ?
                """,
                (record.last_accessed_at, record.store_expires_at, record.session_token),
            )
            conn.commit()

    def _claim_credential(self, record: SessionRecord, now: int) -> bool:
        """Mark the refresh credential consumed; False if it was used before."""
        with (
            _session_storage("Refresh credential claim failed", identity=record.identity_id),
            get_db_connection() as conn,
        ):
            cur = conn.execute(
                """
                INSERT INTO consumed_refresh_credentials (credential_hash, session_token, consumed_at)
                VALUES (?, ?, ?)
                ON CONFLICT(credential_hash) DO NOTHING
                """,
                (hash_token(record.refresh_credential or ""), record.session_token, now),
            )
            conn.commit()
            return cur.rowcount > 0

    def _swap(self, refreshed: SessionRecord, old_credential: str) -> bool:
        """Replace the session atomically, keyed by the credential it was refreshed from."""
        with _session_storage("Session swap failed", identity=refreshed.identity_id), get_db_connection() as conn:
            cur = conn.execute(
                """
                UPDATE sessions
                SET refresh_credential = ?, expires_at = ?, last_accessed_at = ?, store_expires_at = ?
                WHERE session_token = ? AND refresh_credential = ? AND expires_at <= ?
                """,
                (
                    refreshed.refresh_credential,
                    refreshed.expires_at,
                    refreshed.last_accessed_at,
                    refreshed.store_expires_at,
                    refreshed.session_token,
                    old_credential,
                    refreshed.expires_at,
                ),
            )
            conn.commit()
            return cur.rowcount > 0

    # --- public API ---

    def create_session(
        self,
        identity_id: str,
        *,
        email: str | None = None,
        refresh_credential: str | None = None,
        session_token: str | None = None,
        expires_at: int | None = None,
    ) -> SessionRecord:
        """Absent -> Valid, at login.

        ``expires_at`` defaults to one session duration from now; a login that
        hands over a short-lived access token passes its expiry instead.
        """
        now = self._clock()
        record = SessionRecord(
            session_token=session_token or secrets.token_urlsafe(32),
            identity_id=identity_id,
            email=email,
            issued_at=now,
            expires_at=expires_at if expires_at is not None else now + self.duration_ms,
            last_accessed_at=now,
            refresh_credential=refresh_credential,
            store_expires_at=now + self.duration_ms,
        )
        with _session_storage("Session create failed", identity=identity_id), get_db_connection() as conn:
            conn.execute(
                f"""
                INSERT INTO sessions ({_SESSION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.session_token,
                    record.identity_id,
                    record.email,
                    record.issued_at,
                    record.expires_at,
                    record.last_accessed_at,
                    record.refresh_credential,
                    record.store_expires_at,
                ),
            )
            conn.commit()
        logger.info("Session created", identity=identity_id, expires_at=record.expires_at)
        return record

    def revoke_session(self, session_token: str) -> bool:
        with _session_storage("Session revoke failed"), get_db_connection() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE session_token = ?", (session_token,))
            conn.commit()
        return cur.rowcount > 0

    async def validate_and_refresh(self, session_token: str) -> SessionValidation:
        # Single clock read for every comparison below.
        now = self._clock()

        if not session_token:
            return SessionValidation(valid=False, reason=SessionReason.NO_SESSION)

        record = await retry_storage(
            self._load, session_token, now, policy=self.policy, sleep=self._sleep, describe="session load"
        )
        if record is None:
            return SessionValidation(valid=False, reason=SessionReason.NO_SESSION)

        if now < record.expires_at:
            touched = replace(record, last_accessed_at=now, store_expires_at=now + self.duration_ms)
            await retry_storage(
                self._touch,
                touched,
                policy=self.policy,
                sleep=self._sleep,
                describe="session touch",
                log_fields={"identity": record.identity_id},
            )
            return SessionValidation(valid=True, session=touched)

        if not record.refresh_credential:
            return SessionValidation(valid=False, reason=SessionReason.EXPIRED)

        return await self._refresh(record, now)

    async def _refresh(self, record: SessionRecord, now: int) -> SessionValidation:
        if self.provider is None:
            logger.warning("Session refresh unavailable: no identity provider", identity=record.identity_id)
            return SessionValidation(valid=False, reason=SessionReason.REFRESH_FAILED)

        # Claim and swap are not retried: a lost acknowledgement reads as an already used credential.
        claimed = await asyncio.to_thread(self._claim_credential, record, now)
        if not claimed:
            logger.warning(
                "Session refresh failed",
                event="session_refresh_failed",
                identity=record.identity_id,
                reason="refresh credential already used",
            )
            return SessionValidation(valid=False, reason=SessionReason.REFRESH_FAILED)

        try:
            grant = await self.provider.refresh_session(record.refresh_credential)
        except IdentityProviderError as exc:
            logger.error(
                "Session refresh failed",
                event="session_refresh_failed",
                identity=record.identity_id,
                reason=type(exc).__name__,
                error=str(exc),
            )
            return SessionValidation(valid=False, reason=SessionReason.REFRESH_FAILED)

        refreshed = replace(
            record,
            refresh_credential=grant.refresh_credential,
            expires_at=max(now + self.duration_ms, record.expires_at + 1),
            last_accessed_at=now,
            store_expires_at=now + self.duration_ms,
        )
        swapped = await asyncio.to_thread(self._swap, refreshed, record.refresh_credential)
        if not swapped:
            logger.warning(
                "Session refresh lost race",
                event="session_refresh_failed",
                identity=record.identity_id,
            )
            return SessionValidation(valid=False, reason=SessionReason.REFRESH_FAILED)

        logger.info(
            "Session refreshed",
            event="session_refreshed",
            identity=record.identity_id,
            expires_at=refreshed.expires_at,
        )
        return SessionValidation(valid=True, session=refreshed)
