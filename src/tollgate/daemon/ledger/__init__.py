"""Ledger APIs for idempotent metered accounting."""

from .balance import BalanceCheck, DebitResult, check_balance, credit, debit, get_balance
from .idempotency import IdempotencyRecord, get_record, record_outcome
from .audit import AuditRecord, emit_audit_record, list_audit_records
from .retry import RetryPolicy, debit_with_retry, retry_storage

__all__ = [
    "BalanceCheck",
    "DebitResult",
    "check_balance",
    "credit",
    "debit",
    "get_balance",
    "IdempotencyRecord",
    "get_record",
    "record_outcome",
    "AuditRecord",
    "emit_audit_record",
    "list_audit_records",
    "RetryPolicy",
    "debit_with_retry",
    "retry_storage",
]
