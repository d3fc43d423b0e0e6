"""Balance ledger: advisory balance check and the authoritative atomic debit."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from ..db import get_db_connection, is_transient_error
from ..errors import (
    GatewayError,
    IdentityDeactivated,
    InsufficientBalance,
    PersistenceFailed,
    StorageUnavailable,
)
from ..utils.logging_config import StructuredLogger
from .idempotency import ensure_same_request, fetch_record, insert_record

logger = StructuredLogger(__name__)


@dataclass
class BalanceCheck:
    sufficient: bool
    current_balance: int
    identity_deactivated: bool


@dataclass
class DebitResult:
    success: bool
    balance_after: int
    action_id: str
    replayed: bool = False


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def storage_failure(exc: Exception, message: str, **fields) -> GatewayError:
    """Map a driver error to a typed error without leaking driver text."""
    if is_transient_error(exc):
        logger.warning(message, transient=True, error=str(exc), **fields)
        return StorageUnavailable()
    logger.error(message, transient=False, error=str(exc), **fields)
    return PersistenceFailed()


def _load_account(conn, identity_id: str):
    return conn.execute(
        """
        SELECT i.deactivated, b.amount
        FROM identities i
        LEFT JOIN balances b ON b.identity_id = i.identity_id
        WHERE i.identity_id = ?
        """,
        (identity_id,),
    ).fetchone()


def check_balance(identity_id: str, required_amount: int) -> BalanceCheck:
    """Read-only sufficiency check against the latest committed balance.

    Advisory only: ``debit`` re-validates inside its own transaction.
    """
    try:
        with get_db_connection() as conn:
            row = _load_account(conn, identity_id)
    except Exception as exc:
        raise storage_failure(exc, "Balance check failed", identity=identity_id) from exc

    if not row or row["deactivated"]:
        # Unknown identities are reported like deactivated ones.
        current = int(row["amount"] or 0) if row else 0
        result = BalanceCheck(sufficient=False, current_balance=current, identity_deactivated=True)
    else:
        current = int(row["amount"] or 0)
        result = BalanceCheck(
            sufficient=current >= required_amount,
            current_balance=current,
            identity_deactivated=False,
        )

    logger.info(
        "Balance checked",
        event="balance_check",
        user_id=identity_id,
        required_tokens=required_amount,
        current_balance=result.current_balance,
        sufficient=result.sufficient,
        identity_deactivated=result.identity_deactivated,
    )
    return result


def debit(identity_id: str, amount: int, action_id: str, metadata: dict[str, Any] | None = None) -> DebitResult:
    """Atomically create the idempotency record and decrement the balance.

    Exactly one of these outcomes is returned:
    - fresh debit applied (replayed=False)
    - prior debit for ``action_id`` found (replayed=True, nothing re-applied)
    - client error raised (IdentityDeactivated, InsufficientBalance, IdempotencyConflict)

    Driver failures surface as StorageUnavailable (transient) or
    PersistenceFailed; in both cases nothing is committed by this call.
    """
    if amount < 0:
        raise ValueError("Debit amount must be non-negative")
    meta = metadata or {}
    operation_name = str(meta.get("operation_name") or "")
    digest = meta.get("input_digest")

    try:
        with get_db_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")

                existing = fetch_record(conn, action_id)
                if existing:
                    conn.commit()
                    return _replay(existing, identity_id, operation_name, amount, digest)

                account = _load_account(conn, identity_id)
                if not account or account["deactivated"]:
                    conn.rollback()
                    raise IdentityDeactivated()

                # Sufficiency is re-validated by the conditional write itself.
                cas = conn.execute(
                    """
                    UPDATE balances
                    SET amount = amount - ?, version = version + 1, last_modified = ?
                    WHERE identity_id = ? AND amount >= ?
                    """,
                    (amount, _utc_now_iso(), identity_id, amount),
                )
                if cas.rowcount == 0:
                    conn.rollback()
                    current = int(account["amount"] or 0)
                    logger.warning(
                        "Debit rejected",
                        event="balance_check",
                        user_id=identity_id,
                        required_tokens=amount,
                        current_balance=current,
                        sufficient=False,
                        action_id=action_id,
                    )
                    raise InsufficientBalance(current, amount, operation_name or None)

                balance_after = int(
                    conn.execute(
                        "SELECT amount FROM balances WHERE identity_id = ?",
                        (identity_id,),
                    ).fetchone()["amount"]
                )

                created = insert_record(
                    conn,
                    action_id=action_id,
                    identity_id=identity_id,
                    operation_name=operation_name,
                    amount_debited=amount,
                    balance_after=balance_after,
                    input_digest=digest,
                )
                if not created:
                    # A concurrent writer committed this action_id first.
                    conn.rollback()
                    existing = fetch_record(conn, action_id)
                    if existing is None:
                        raise StorageUnavailable()
                    return _replay(existing, identity_id, operation_name, amount, digest)

                conn.commit()
            except GatewayError:
                raise
            except Exception:
                conn.rollback()
                raise
    except GatewayError:
        raise
    except Exception as exc:
        raise storage_failure(exc, "Debit failed", identity=identity_id, action_id=action_id) from exc

    logger.info(
        "Tokens consumed",
        event="token_consumed",
        user_id=identity_id,
        tokens=amount,
        balance_after=balance_after,
        tool=operation_name,
        action_id=action_id,
        success=True,
    )
    return DebitResult(success=True, balance_after=balance_after, action_id=action_id)


def _replay(existing, identity_id: str, operation_name: str, amount: int, digest: str | None) -> DebitResult:
    ensure_same_request(
        existing,
        identity_id=identity_id,
        operation_name=operation_name,
        amount=amount,
        input_digest=digest,
    )
    logger.info(
        "Idempotent replay, debit not re-applied",
        event="idempotency_skip",
        action_id=existing.action_id,
        user_id=identity_id,
        tool=existing.operation_name,
        original_timestamp=existing.created_at,
    )
    return DebitResult(
        success=True,
        balance_after=existing.balance_after,
        action_id=existing.action_id,
        replayed=True,
    )


def get_balance(identity_id: str) -> int | None:
    """Current committed balance, or None for an unknown identity."""
    try:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT amount FROM balances WHERE identity_id = ?",
                (identity_id,),
            ).fetchone()
    except Exception as exc:
        raise storage_failure(exc, "Balance read failed", identity=identity_id) from exc
    return int(row["amount"]) if row else None


def credit(identity_id: str, amount: int) -> int:
    """Administrative top-up; returns the new balance."""
    if amount <= 0:
        raise ValueError("Top-up amount must be positive")
    with get_db_connection() as conn:
        try:
            conn.execute("BEGIN IMMEDIATE")
            cur = conn.execute(
                """
                UPDATE balances
                SET amount = amount + ?, version = version + 1, last_modified = ?
                WHERE identity_id = ?
                """,
                (amount, _utc_now_iso(), identity_id),
            )
            if cur.rowcount == 0:
                conn.rollback()
                raise IdentityDeactivated()
            row = conn.execute("SELECT amount FROM balances WHERE identity_id = ?", (identity_id,)).fetchone()
            conn.commit()
        except GatewayError:
            raise
        except Exception:
            conn.rollback()
            raise
    return int(row["amount"])
