"""Audit sink: one structured record per terminal outcome.

Rows are keyed by ``(action_id, outcome)`` so a retried or replayed request
can never produce a second record for the same terminal outcome.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from ..db import get_db_connection
from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

SUCCESS_OUTCOME = "success"


@dataclass
class AuditRecord:
    identity_id: str | None
    operation_name: str | None
    action_id: str
    tokens_consumed: int
    success: bool
    error_code: str | None = None
    metadata: dict[str, Any] | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def outcome(self) -> str:
        return SUCCESS_OUTCOME if self.success else (self.error_code or "FAILED")


def emit_audit_record(record: AuditRecord, *, best_effort: bool = False) -> bool:
    """Persist and log an audit record. Returns False if it was already emitted.

    With ``best_effort`` a storage failure is logged instead of raised; used
    on failure paths where the store may be the thing that is failing.
    """
    metadata_text = None
    if record.metadata is not None:
        metadata_text = json.dumps(record.metadata, ensure_ascii=True, default=str)

    try:
        with get_db_connection() as conn:
            cur = conn.execute(
                """
                INSERT INTO audit_log (
                    audit_id, recorded_at, identity_id, operation_name, action_id,
                    tokens_consumed, success, error_code, outcome, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(action_id, outcome) DO NOTHING
                """,
                (
                    uuid.uuid4().hex,
                    record.timestamp,
                    record.identity_id,
                    record.operation_name,
                    record.action_id,
                    record.tokens_consumed,
                    1 if record.success else 0,
                    record.error_code,
                    record.outcome,
                    metadata_text,
                ),
            )
            conn.commit()
            inserted = cur.rowcount > 0
    except Exception as exc:
        if not best_effort:
            raise
        logger.error(
            "Audit record could not be persisted",
            action_id=record.action_id,
            error_code=record.error_code,
            error=str(exc),
        )
        inserted = True

    if inserted:
        payload = asdict(record)
        payload.pop("metadata", None)
        logger.info("Audit record", event="audit", **payload)
    return inserted


def list_audit_records(identity_id: str | None = None, limit: int = 50) -> list[AuditRecord]:
    query = """
        SELECT recorded_at, identity_id, operation_name, action_id,
               tokens_consumed, success, error_code, metadata
        FROM audit_log
    """
    params: list[Any] = []
    if identity_id:
        query += " WHERE identity_id = ?"
        params.append(identity_id)
    query += " ORDER BY recorded_at DESC LIMIT ?"
    params.append(limit)

    with get_db_connection() as conn:
        rows = conn.execute(query, tuple(params)).fetchall()

    return [
        AuditRecord(
            identity_id=r["identity_id"],
            operation_name=r["operation_name"],
            action_id=r["action_id"],
            tokens_consumed=int(r["tokens_consumed"]),
            success=bool(r["success"]),
            error_code=r["error_code"],
            metadata=json.loads(r["metadata"]) if r["metadata"] else None,
            timestamp=r["recorded_at"],
        )
        for r in rows
    ]
