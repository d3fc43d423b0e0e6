"""Database schema initialization for Tollgate.

The DDL sticks to the subset shared by SQLite and PostgreSQL so the same
statements run against either backend.
"""

from ..utils.logging_config import StructuredLogger
from .connection import get_db_connection, get_db_dsn, get_db_path

logger = StructuredLogger(__name__)

_TABLES = (
    # Identities are never deleted; ``deactivated`` is the soft delete flag.
    """
    CREATE TABLE IF NOT EXISTS identities (
        identity_id TEXT PRIMARY KEY,
        email TEXT,
        api_key_hash TEXT UNIQUE,
        deactivated INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS balances (
        identity_id TEXT PRIMARY KEY REFERENCES identities(identity_id),
        amount BIGINT NOT NULL DEFAULT 0,
        version BIGINT NOT NULL DEFAULT 0,
        last_modified TEXT NOT NULL,
        CHECK (amount >= 0)
    )
    """,
    # Debit columns are written once with the balance decrement; outcome
    # columns are filled once when the operation finishes.
    """
    CREATE TABLE IF NOT EXISTS idempotency_records (
        action_id TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL REFERENCES identities(identity_id),
        operation_name TEXT NOT NULL,
        amount_debited BIGINT NOT NULL,
        balance_after BIGINT NOT NULL,
        input_digest TEXT,
        outcome_digest TEXT,
        outcome_body TEXT,
        success INTEGER,
        created_at TEXT NOT NULL,
        completed_at TEXT,
        CHECK (amount_debited >= 0),
        CHECK (balance_after >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        audit_id TEXT PRIMARY KEY,
        recorded_at TEXT NOT NULL,
        identity_id TEXT,
        operation_name TEXT,
        action_id TEXT NOT NULL,
        tokens_consumed BIGINT NOT NULL DEFAULT 0,
        success INTEGER NOT NULL,
        error_code TEXT,
        outcome TEXT NOT NULL,
        metadata TEXT,
        UNIQUE (action_id, outcome)
    )
    """,
    # Session timestamps are epoch milliseconds; store_expires_at is the
    # storage-level TTL, independent of the logical expires_at.
    """
    CREATE TABLE IF NOT EXISTS sessions (
        session_token TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL,
        email TEXT,
        issued_at BIGINT NOT NULL,
        expires_at BIGINT NOT NULL,
        last_accessed_at BIGINT NOT NULL,
        refresh_credential TEXT,
        store_expires_at BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS consumed_refresh_credentials (
        credential_hash TEXT PRIMARY KEY,
        session_token TEXT NOT NULL,
        consumed_at BIGINT NOT NULL
    )
    """,
)

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_records_identity ON idempotency_records (identity_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_identity ON audit_log (identity_id, recorded_at)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_identity ON sessions (identity_id)",
)

REQUIRED_TABLES = (
    "identities",
    "balances",
    "idempotency_records",
    "audit_log",
    "sessions",
    "consumed_refresh_credentials",
)


def init_db():
    """Initialize the database with the required schema (idempotent)."""
    logger.info("Initializing database", path=get_db_path())
    with get_db_connection() as conn:
        if get_db_dsn() is None:
            # WAL mode for concurrency
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")

        for ddl in _TABLES:
            conn.execute(ddl)
        for ddl in _INDEXES:
            conn.execute(ddl)
        conn.commit()
    logger.info("Database initialized successfully")
