"""Typed gateway errors.

Every terminal failure carries a stable ``code`` plus a human-readable
message. Errors subclass ``HTTPException`` so the HTTP layer can raise them
directly; the engine itself never depends on that.
"""

from __future__ import annotations

from fastapi import HTTPException


class GatewayError(HTTPException):
    code = "GATEWAY_ERROR"
    default_status = 500
    default_message = "Gateway error"
    retryable = False

    def __init__(self, message: str | None = None, *, status_code: int | None = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(status_code=status_code or self.default_status, detail=self.message)

    def to_dict(self) -> dict:
        return {"error_code": self.code, "detail": self.message}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# --- Client errors (never retried) ---

class Unauthenticated(GatewayError):
    code = "UNAUTHENTICATED"
    default_status = 401
    default_message = "Invalid or missing credentials"


class IdentityDeactivated(GatewayError):
    code = "IDENTITY_DEACTIVATED"
    default_status = 403
    default_message = "Identity not found or account deactivated"


class InsufficientBalance(GatewayError):
    code = "INSUFFICIENT_BALANCE"
    default_status = 402
    default_message = "Insufficient token balance"

    def __init__(self, current_balance: int, required: int, operation_name: str | None = None):
        self.current_balance = current_balance
        self.required = required
        target = f" for '{operation_name}'" if operation_name else ""
        super().__init__(
            f"Insufficient token balance{target}: {required} required, {current_balance} available",
            current_balance=current_balance,
            required=required,
        )


class UnknownOperation(GatewayError):
    code = "UNKNOWN_OPERATION"
    default_status = 404
    default_message = "Unknown operation"

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        super().__init__(f"Unknown operation: {operation_name}")


class IdempotencyConflict(GatewayError):
    code = "IDEMPOTENCY_CONFLICT"
    default_status = 409
    default_message = "Idempotency conflict: action_id is already bound to a different request"


class ExecutionInProgress(GatewayError):
    code = "EXECUTION_IN_PROGRESS"
    default_status = 409
    default_message = "Execution already in progress"

    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Execution already in progress ({action_id})")


# --- Storage errors ---

class StorageUnavailable(GatewayError):
    code = "STORAGE_UNAVAILABLE"
    default_status = 503
    default_message = "Storage temporarily unavailable"
    retryable = True


class PersistenceFailed(GatewayError):
    code = "PERSISTENCE_FAILED"
    default_status = 503
    default_message = "Accounting could not be persisted; the operation did not complete"


# --- Post-debit failure ---

class OperationFailed(GatewayError):
    code = "OPERATION_FAILED"
    default_status = 500
    default_message = "Operation failed"

    def __init__(self, operation_name: str, tokens_consumed: int = 0):
        self.operation_name = operation_name
        self.tokens_consumed = tokens_consumed
        super().__init__(f"Error executing {operation_name}", tokens_consumed=tokens_consumed)


INTERNAL_ERROR_CODE = "INTERNAL_ERROR"

ERROR_STATUS = {
    cls.code: cls.default_status
    for cls in (
        Unauthenticated,
        IdentityDeactivated,
        InsufficientBalance,
        UnknownOperation,
        IdempotencyConflict,
        ExecutionInProgress,
        StorageUnavailable,
        PersistenceFailed,
        OperationFailed,
    )
}
ERROR_STATUS[INTERNAL_ERROR_CODE] = 500
