"""Database integrity checks for schema + accounting invariants."""

from __future__ import annotations

from ..utils.invariants import run_all_checks
from ..utils.logging_config import StructuredLogger
from .connection import get_db_connection
from .schema import REQUIRED_TABLES

logger = StructuredLogger(__name__)

# Failing any of these blocks startup; the rest only degrade readiness.
STARTUP_CRITICAL_INVARIANTS = {"no_negative_balances", "every_identity_has_balance"}


def missing_tables(conn) -> list[str]:
    missing = []
    for table in REQUIRED_TABLES:
        try:
            conn.execute(f"SELECT 1 FROM {table} LIMIT 1").fetchone()
        except Exception:
            missing.append(table)
            # A failed statement aborts the surrounding transaction on PostgreSQL.
            conn.rollback()
    return missing


def check_db_integrity() -> bool:
    """Run fast schema + invariant checks used by daemon startup."""
    with get_db_connection() as conn:
        absent = missing_tables(conn)
        if absent:
            logger.critical("Integrity Error: missing tables", tables=absent)
            return False

        for result in run_all_checks(conn):
            if not result.passed and result.name in STARTUP_CRITICAL_INVARIANTS:
                logger.critical("Integrity Error: invariant violated", invariant=result.name, detail=result.detail)
                return False
    return True
