"""
Accounting invariants over the durable store.

All checks are read-only queries; they never mutate state.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class InvariantResult:
    name: str
    passed: bool
    detail: Optional[str] = None


def check_no_negative_balances(conn) -> InvariantResult:
    """Balances are never negative."""
    rows = conn.execute(
        "SELECT identity_id, amount FROM balances WHERE amount < 0"
    ).fetchall()

    if rows:
        violations = [f"{r['identity_id']}: amount={r['amount']}" for r in rows]
        return InvariantResult(
            name="no_negative_balances",
            passed=False,
            detail=f"Violations: {'; '.join(violations)}",
        )
    return InvariantResult(name="no_negative_balances", passed=True)


def check_every_identity_has_balance(conn) -> InvariantResult:
    """Each identity owns exactly one balance row."""
    rows = conn.execute(
        """
        SELECT i.identity_id
        FROM identities i
        LEFT JOIN balances b ON b.identity_id = i.identity_id
        WHERE b.identity_id IS NULL
        """
    ).fetchall()

    if rows:
        missing = [r["identity_id"] for r in rows]
        return InvariantResult(
            name="every_identity_has_balance",
            passed=False,
            detail=f"Identities without balance: {', '.join(missing)}",
        )
    return InvariantResult(name="every_identity_has_balance", passed=True)


def check_completed_records_audited(conn) -> InvariantResult:
    """A record with a recorded outcome has a matching terminal audit row.

    Best-effort: audit writes are not atomic with the outcome write, so a
    crash between the two shows up here rather than being prevented.
    """
    rows = conn.execute(
        """
        SELECT r.action_id
        FROM idempotency_records r
        LEFT JOIN audit_log a ON a.action_id = r.action_id
        WHERE r.outcome_digest IS NOT NULL AND a.action_id IS NULL
        """
    ).fetchall()

    if rows:
        orphans = [r["action_id"] for r in rows[:20]]
        return InvariantResult(
            name="completed_records_audited",
            passed=False,
            detail=f"{len(rows)} completed records without audit (first: {', '.join(orphans)})",
        )
    return InvariantResult(name="completed_records_audited", passed=True)


def run_all_checks(conn) -> list[InvariantResult]:
    return [
        check_no_negative_balances(conn),
        check_every_identity_has_balance(conn),
        check_completed_records_audited(conn),
    ]
