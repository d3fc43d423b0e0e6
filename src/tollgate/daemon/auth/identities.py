"""Identity records: creation, lookup, soft delete and top-up."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from ..db import get_db_connection
from ..errors import IdentityDeactivated
from ..ledger.audit import AuditRecord, emit_audit_record
from ..ledger.balance import credit
from ..utils.logging_config import StructuredLogger
from .hashing import generate_api_key, hash_token

logger = StructuredLogger(__name__)


@dataclass(frozen=True)
class Identity:
    identity_id: str
    email: str | None
    deactivated: bool
    created_at: str


def _row_to_identity(row) -> Identity:
    return Identity(
        identity_id=row["identity_id"],
        email=row["email"],
        deactivated=bool(row["deactivated"]),
        created_at=row["created_at"],
    )


def create_identity(email: str | None, initial_balance: int = 0, identity_id: str | None = None) -> tuple[Identity, str]:
    """Create an identity with its balance row. Returns the identity and the raw API key.

    The raw key is only available here; the store keeps its SHA-256 hash.
    """
    if initial_balance < 0:
        raise ValueError("Initial balance must be non-negative")
    identity_id = identity_id or uuid.uuid4().hex
    api_key = generate_api_key()
    now = datetime.now(UTC).isoformat()

    with get_db_connection() as conn:
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                INSERT INTO identities (identity_id, email, api_key_hash, deactivated, created_at)
                VALUES (?, ?, ?, 0, ?)
                """,
                (identity_id, email, hash_token(api_key), now),
            )
            conn.execute(
                "INSERT INTO balances (identity_id, amount, version, last_modified) VALUES (?, ?, 0, ?)",
                (identity_id, initial_balance, now),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("Identity created", identity=identity_id, initial_balance=initial_balance)
    return Identity(identity_id=identity_id, email=email, deactivated=False, created_at=now), api_key


def get_identity(identity_id: str) -> Identity | None:
    with get_db_connection() as conn:
        row = conn.execute(
            "SELECT identity_id, email, deactivated, created_at FROM identities WHERE identity_id = ?",
            (identity_id,),
        ).fetchone()
    return _row_to_identity(row) if row else None


def find_identity_by_key_hash(key_hash: str) -> Identity | None:
    with get_db_connection() as conn:
        row = conn.execute(
            "SELECT identity_id, email, deactivated, created_at FROM identities WHERE api_key_hash = ?",
            (key_hash,),
        ).fetchone()
    return _row_to_identity(row) if row else None


def deactivate_identity(identity_id: str) -> bool:
    """Soft delete. Returns False for an unknown identity."""
    with get_db_connection() as conn:
        cur = conn.execute(
            "UPDATE identities SET deactivated = 1 WHERE identity_id = ?",
            (identity_id,),
        )
        conn.commit()
    if cur.rowcount:
        logger.warning("Identity deactivated", identity=identity_id)
    return cur.rowcount > 0


def rotate_api_key(identity_id: str) -> str:
    api_key = generate_api_key()
    with get_db_connection() as conn:
        cur = conn.execute(
            "UPDATE identities SET api_key_hash = ? WHERE identity_id = ? AND deactivated = 0",
            (hash_token(api_key), identity_id),
        )
        conn.commit()
    if cur.rowcount == 0:
        raise IdentityDeactivated()
    return api_key


def top_up(identity_id: str, amount: int, *, reason: str = "manual") -> int:
    """Credit tokens to an active identity and audit the grant."""
    identity = get_identity(identity_id)
    if identity is None or identity.deactivated:
        raise IdentityDeactivated()
    balance = credit(identity_id, amount)
    emit_audit_record(
        AuditRecord(
            identity_id=identity_id,
            operation_name="admin.topup",
            action_id=f"topup_{uuid.uuid4().hex}",
            tokens_consumed=0,
            success=True,
            metadata={"credited": amount, "balance_after": balance, "reason": reason},
        )
    )
    return balance
