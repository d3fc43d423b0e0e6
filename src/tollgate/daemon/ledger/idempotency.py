"""Idempotency record store.

A record is created exactly once per ``action_id``, inside the debit
transaction, and is the sole deduplication mechanism. Its debit columns are
never rewritten; the outcome columns are filled once, by compare-and-set on
``outcome_digest IS NULL``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from ..db import get_db_connection, is_transient_error
from ..errors import IdempotencyConflict, PersistenceFailed, StorageUnavailable
from ..utils.deterministic import outcome_digest
from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

_RECORD_COLUMNS = """
    action_id, identity_id, operation_name, amount_debited, balance_after,
    input_digest, outcome_digest, outcome_body, success, created_at, completed_at
"""


@dataclass
class IdempotencyRecord:
    action_id: str
    identity_id: str
    operation_name: str
    amount_debited: int
    balance_after: int
    input_digest: str | None
    outcome_digest: str | None
    outcome_body: str | None
    success: bool | None
    created_at: str
    completed_at: str | None = None

    @property
    def completed(self) -> bool:
        return self.outcome_digest is not None

    def outcome(self) -> Any:
        if not self.outcome_body:
            return None
        try:
            return json.loads(self.outcome_body)
        except ValueError:
            return {"raw": self.outcome_body}


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _row_to_record(row) -> IdempotencyRecord:
    success = row["success"]
    return IdempotencyRecord(
        action_id=row["action_id"],
        identity_id=row["identity_id"],
        operation_name=row["operation_name"],
        amount_debited=int(row["amount_debited"]),
        balance_after=int(row["balance_after"]),
        input_digest=row["input_digest"],
        outcome_digest=row["outcome_digest"],
        outcome_body=row["outcome_body"],
        success=None if success is None else bool(success),
        created_at=row["created_at"],
        completed_at=row["completed_at"],
    )


def fetch_record(conn, action_id: str) -> IdempotencyRecord | None:
    """Look up a record on an open connection (inside the caller's transaction)."""
    row = conn.execute(
        f"SELECT {_RECORD_COLUMNS} FROM idempotency_records WHERE action_id = ?",
        (action_id,),
    ).fetchone()
    return _row_to_record(row) if row else None


def insert_record(
    conn,
    *,
    action_id: str,
    identity_id: str,
    operation_name: str,
    amount_debited: int,
    balance_after: int,
    input_digest: str | None,
) -> bool:
    """Insert a fresh record; False when another writer already claimed ``action_id``.

    Must be called inside the debit transaction.
    """
    cur = conn.execute(
        """
        INSERT INTO idempotency_records (
            action_id, identity_id, operation_name, amount_debited,
            balance_after, input_digest, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(action_id) DO NOTHING
        """,
        (action_id, identity_id, operation_name, amount_debited, balance_after, input_digest, _utc_now_iso()),
    )
    return cur.rowcount > 0


def ensure_same_request(
    record: IdempotencyRecord,
    *,
    identity_id: str,
    operation_name: str,
    amount: int,
    input_digest: str | None,
) -> None:
    """Refuse to replay a record for a request it was not created for."""
    mismatches = []
    if record.identity_id != identity_id:
        mismatches.append("identity")
    if operation_name and record.operation_name != operation_name:
        mismatches.append("operation")
    if record.amount_debited != amount:
        mismatches.append("amount")
    if input_digest and record.input_digest and record.input_digest != input_digest:
        mismatches.append("input")
    if mismatches:
        logger.warning(
            "Idempotency conflict",
            action_id=record.action_id,
            mismatched=mismatches,
        )
        raise IdempotencyConflict()


def get_record(action_id: str) -> IdempotencyRecord | None:
    try:
        with get_db_connection() as conn:
            return fetch_record(conn, action_id)
    except Exception as exc:
        if is_transient_error(exc):
            raise StorageUnavailable() from exc
        logger.error("Idempotency lookup failed", action_id=action_id, error=str(exc))
        raise PersistenceFailed() from exc


def record_outcome(action_id: str, *, success: bool, outcome_text: str) -> bool:
    """Fill the outcome columns once. Returns False if already recorded."""
    digest = outcome_digest(outcome_text)
    try:
        with get_db_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cas = conn.execute(
                """
                UPDATE idempotency_records
                SET outcome_digest = ?, outcome_body = ?, success = ?, completed_at = ?
                WHERE action_id = ? AND outcome_digest IS NULL
                """,
                (digest, outcome_text, 1 if success else 0, _utc_now_iso(), action_id),
            )
            conn.commit()
            return cas.rowcount > 0
    except Exception as exc:
        if is_transient_error(exc):
            raise StorageUnavailable() from exc
        logger.error("Failed to record outcome", action_id=action_id, error=str(exc))
        raise PersistenceFailed() from exc


def list_records(identity_id: str, limit: int = 50) -> list[IdempotencyRecord]:
    with get_db_connection() as conn:
        rows = conn.execute(
            f"""
            SELECT {_RECORD_COLUMNS} FROM idempotency_records
            WHERE identity_id = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (identity_id, limit),
        ).fetchall()
    return [_row_to_record(r) for r in rows]
