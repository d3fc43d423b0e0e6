"""Execution dispatcher: authenticate, resolve context, check, debit, run, audit.

Identity and execution context are passed explicitly through every step;
nothing here reads ambient request state.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable

from ..auth.identities import Identity
from ..auth.middleware import authenticate_api_key
from ..errors import (
    INTERNAL_ERROR_CODE,
    ExecutionInProgress,
    GatewayError,
    IdempotencyConflict,
    IdentityDeactivated,
    InsufficientBalance,
    OperationFailed,
    PersistenceFailed,
    UnknownOperation,
)
from ..ledger.audit import AuditRecord, emit_audit_record
from ..ledger.balance import check_balance
from ..ledger.idempotency import get_record, record_outcome
from ..ledger.retry import RetryPolicy, debit_with_retry, retry_storage
from ..utils.config_loader import ConfigLoader, SecuritySettings, config_loader
from ..utils.deterministic import canonical_json, input_digest
from ..utils.logging_config import StructuredLogger
from ..utils.security import secure_output
from .cache import InstanceCache, LRUCache
from .idempotency import resolve_action_id
from .registry import ExecutionContext, OperationContext, OperationRegistry

logger = StructuredLogger(__name__)

DEFAULT_CACHE_MAX_ENTRIES = 1000

# Outcomes audited inside execute_with_idempotency, or not owned by this request.
_NOT_AUDITED_BY_DISPATCHER = {
    IdempotencyConflict.code,
    ExecutionInProgress.code,
    OperationFailed.code,
    PersistenceFailed.code,
}


@dataclass
class ExecutionOutcome:
    success: bool
    action_id: str
    operation_name: str
    result: Any = None
    error_code: str | None = None
    message: str | None = None
    tokens_consumed: int = 0
    balance_after: int | None = None
    replayed: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.success:
            data.pop("error_code")
            data.pop("message")
        else:
            data.pop("result")
        return data


def _outcome_text(success: bool, *, result: Any = None, error_code: str | None = None) -> str:
    if success:
        return canonical_json({"success": True, "result": result})
    return canonical_json({"success": False, "error_code": error_code})


async def _record_outcome(action_id: str, success: bool, text: str, policy: RetryPolicy | None, sleep) -> None:
    try:
        await retry_storage(
            record_outcome,
            action_id,
            success=success,
            outcome_text=text,
            policy=policy,
            sleep=sleep,
            describe="outcome recording",
            log_fields={"action_id": action_id},
        )
    except PersistenceFailed:
        # The debit is committed; a missing outcome leaves later replays pending.
        logger.critical("Outcome could not be recorded", action_id=action_id, success=success)


async def _settle_success(
    identity_id: str,
    operation_name: str,
    action_id: str,
    amount: int,
    result: Any,
    policy,
    sleep,
) -> None:
    await _record_outcome(action_id, True, _outcome_text(True, result=result), policy, sleep)
    await asyncio.to_thread(
        emit_audit_record,
        AuditRecord(
            identity_id=identity_id,
            operation_name=operation_name,
            action_id=action_id,
            tokens_consumed=amount,
            success=True,
        ),
        best_effort=True,
    )


async def _settle_failure(
    identity_id: str,
    operation_name: str,
    action_id: str,
    amount: int,
    policy,
    sleep,
    metadata: dict[str, Any] | None = None,
) -> None:
    await _record_outcome(action_id, False, _outcome_text(False, error_code=OperationFailed.code), policy, sleep)
    await asyncio.to_thread(
        emit_audit_record,
        AuditRecord(
            identity_id=identity_id,
            operation_name=operation_name,
            action_id=action_id,
            tokens_consumed=amount,
            success=False,
            error_code=OperationFailed.code,
            metadata=metadata,
        ),
        best_effort=True,
    )


async def _replay_outcome(
    identity_id: str,
    amount: int,
    action_id: str,
    operation_name: str,
    policy: RetryPolicy | None,
    sleep,
) -> ExecutionOutcome:
    record = await retry_storage(
        get_record,
        action_id,
        policy=policy,
        sleep=sleep,
        describe="idempotency lookup",
        log_fields={"action_id": action_id},
    )
    if record is None or not record.completed:
        raise ExecutionInProgress(action_id)

    stored = record.outcome() or {}
    await asyncio.to_thread(
        emit_audit_record,
        AuditRecord(
            identity_id=identity_id,
            operation_name=operation_name,
            action_id=action_id,
            tokens_consumed=record.amount_debited,
            success=bool(record.success),
            error_code=None if record.success else stored.get("error_code", OperationFailed.code),
        ),
        best_effort=True,
    )
    if not record.success:
        raise OperationFailed(operation_name, tokens_consumed=record.amount_debited)

    return ExecutionOutcome(
        success=True,
        action_id=action_id,
        operation_name=operation_name,
        result=stored.get("result"),
        tokens_consumed=record.amount_debited,
        balance_after=record.balance_after,
        replayed=True,
    )


async def execute_with_idempotency(
    identity_id: str,
    amount: int,
    action_id: str,
    operation: Callable[[], Awaitable[Any]],
    audit_payload: dict[str, Any],
    *,
    security: SecuritySettings | None = None,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ExecutionOutcome:
    """Charge once for ``action_id``, then run ``operation`` and record what happened.

    The debit comes first: a failing operation is still charged and is
    recorded as OPERATION_FAILED. A replayed ``action_id`` never re-runs the
    operation; it returns the stored outcome, or EXECUTION_IN_PROGRESS while
    the first attempt is still running.
    """
    operation_name = str(audit_payload.get("operation_name") or "")

    try:
        debit = await debit_with_retry(identity_id, amount, action_id, audit_payload, policy=policy, sleep=sleep)
    except PersistenceFailed:
        await asyncio.to_thread(
            emit_audit_record,
            AuditRecord(
                identity_id=identity_id,
                operation_name=operation_name,
                action_id=action_id,
                tokens_consumed=0,
                success=False,
                error_code=PersistenceFailed.code,
                metadata={"amount": amount},
            ),
            best_effort=True,
        )
        logger.error(
            "Token deduction failed, operation not executed",
            event="failed_deduction_logged",
            user_id=identity_id,
            tool=operation_name,
            tokens=amount,
            action_id=action_id,
        )
        raise

    if debit.replayed:
        return await _replay_outcome(identity_id, amount, action_id, operation_name, policy, sleep)

    try:
        result = await operation()
    except asyncio.CancelledError:
        logger.warning(
            "Operation cancelled after debit",
            event="tool_failed",
            user_id=identity_id,
            tool=operation_name,
            action_id=action_id,
            tokens_consumed=amount,
            cancelled=True,
        )
        # The debit stands, so the record and audit row are settled before the cancellation propagates.
        await asyncio.shield(
            _settle_failure(identity_id, operation_name, action_id, amount, policy, sleep, {"cancelled": True})
        )
        raise
    except Exception as exc:
        logger.error(
            "Operation failed after debit",
            event="tool_failed",
            user_id=identity_id,
            tool=operation_name,
            action_id=action_id,
            tokens_consumed=amount,
            error=str(exc),
        )
        await _settle_failure(identity_id, operation_name, action_id, amount, policy, sleep)
        raise OperationFailed(operation_name, tokens_consumed=amount) from exc

    if security is not None:
        result, detected = secure_output(result, security)
        if detected:
            logger.warning(
                "PII redacted from operation output",
                event="pii_redacted",
                user_id=identity_id,
                tool=operation_name,
                action_id=action_id,
                pii_types=detected,
            )

    await asyncio.shield(_settle_success(identity_id, operation_name, action_id, amount, result, policy, sleep))
    return ExecutionOutcome(
        success=True,
        action_id=action_id,
        operation_name=operation_name,
        result=result,
        tokens_consumed=amount,
        balance_after=debit.balance_after,
    )


def cache_max_entries() -> int:
    return max(1, int(os.getenv("TOLLGATE_CACHE_MAX_ENTRIES", str(DEFAULT_CACHE_MAX_ENTRIES))))


class ExecutionDispatcher:
    def __init__(
        self,
        registry: OperationRegistry,
        *,
        cache: InstanceCache[str, ExecutionContext] | None = None,
        catalog: ConfigLoader | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.cache = cache if cache is not None else LRUCache(cache_max_entries())
        self.catalog = catalog or config_loader
        self.policy = policy
        self._sleep = sleep

    def resolve_context(self, identity_id: str) -> ExecutionContext:
        ctx = self.cache.get(identity_id)
        if ctx is not None:
            logger.debug("Execution context cache hit", event="cache_hit", identity=identity_id)
            return ctx
        logger.debug("Execution context cache miss", event="cache_miss", identity=identity_id)
        ctx = self.registry.build_context(identity_id)
        self.cache.set(identity_id, ctx)
        return ctx

    async def _admit(self, identity_id: str, operation_name: str, action_id: str, cost: int) -> None:
        """Advisory balance check; a known action id skips it so replays stay answerable."""
        existing = await retry_storage(
            get_record,
            action_id,
            policy=self.policy,
            sleep=self._sleep,
            describe="idempotency lookup",
            log_fields={"action_id": action_id},
        )
        if existing is not None:
            return
        check = await retry_storage(
            check_balance,
            identity_id,
            cost,
            policy=self.policy,
            sleep=self._sleep,
            describe="balance check",
            log_fields={"action_id": action_id, "user_id": identity_id},
        )
        if check.identity_deactivated:
            raise IdentityDeactivated()
        if not check.sufficient:
            raise InsufficientBalance(check.current_balance, cost, operation_name)

    async def invoke(
        self,
        identity: Identity,
        operation_name: str,
        input_payload: Any = None,
        *,
        action_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> ExecutionOutcome:
        """Run one metered invocation for an authenticated identity.

        Never raises for gateway failures; they come back as an unsuccessful
        outcome carrying the error code.
        """
        identity_id = identity.identity_id
        action_id = resolve_action_id(
            identity_id=identity_id,
            operation_name=operation_name,
            action_id=action_id,
            idempotency_key=idempotency_key,
        )
        started = time.perf_counter()

        try:
            if identity.deactivated:
                raise IdentityDeactivated()

            op_config = self.catalog.get_operation(operation_name)
            if op_config is None or operation_name not in self.registry:
                raise UnknownOperation(operation_name)

            ctx = self.resolve_context(identity_id)
            bound = ctx.get(operation_name)
            await self._admit(identity_id, operation_name, action_id, op_config.cost)

            op_ctx = OperationContext(identity_id=identity_id, action_id=action_id, operation_name=operation_name)
            outcome = await execute_with_idempotency(
                identity_id,
                op_config.cost,
                action_id,
                lambda: bound.run(input_payload, op_ctx),
                {
                    "operation_name": operation_name,
                    "input_digest": input_digest(operation_name, input_payload),
                },
                security=self.catalog.get_security(),
                policy=self.policy,
                sleep=self._sleep,
            )
        except GatewayError as exc:
            if exc.code not in _NOT_AUDITED_BY_DISPATCHER:
                await asyncio.to_thread(
                    emit_audit_record,
                    AuditRecord(
                        identity_id=identity_id,
                        operation_name=operation_name,
                        action_id=action_id,
                        tokens_consumed=0,
                        success=False,
                        error_code=exc.code,
                    ),
                    best_effort=True,
                )
            return ExecutionOutcome(
                success=False,
                action_id=action_id,
                operation_name=operation_name,
                error_code=exc.code,
                message=exc.message,
                tokens_consumed=getattr(exc, "tokens_consumed", 0),
            )
        except Exception as exc:
            logger.error(
                "Unexpected error during invocation",
                user_id=identity_id,
                tool=operation_name,
                action_id=action_id,
                error=str(exc),
            )
            return ExecutionOutcome(
                success=False,
                action_id=action_id,
                operation_name=operation_name,
                error_code=INTERNAL_ERROR_CODE,
                message="Internal error",
            )

        logger.info(
            "Operation completed",
            event="tool_completed",
            user_id=identity_id,
            tool=operation_name,
            action_id=action_id,
            tokens_consumed=outcome.tokens_consumed,
            replayed=outcome.replayed,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return outcome

    async def dispatch(
        self,
        api_key: str | None,
        operation_name: str,
        input_payload: Any = None,
        *,
        action_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> ExecutionOutcome:
        """Authenticate ``api_key`` and invoke; authentication failures become outcomes too."""
        try:
            identity = await asyncio.to_thread(authenticate_api_key, api_key)
        except GatewayError as exc:
            return ExecutionOutcome(
                success=False,
                action_id=action_id or "",
                operation_name=operation_name,
                error_code=exc.code,
                message=exc.message,
            )
        return await self.invoke(
            identity,
            operation_name,
            input_payload,
            action_id=action_id,
            idempotency_key=idempotency_key,
        )
