"""Retry controller for ledger writes.

Three branches, kept distinct:
- already applied: the debit reports a replay, which is success;
- still failing: StorageUnavailable, retried with exponential backoff;
- never apply: any other GatewayError, surfaced immediately.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import PersistenceFailed, StorageUnavailable
from ..utils.logging_config import StructuredLogger
from .balance import DebitResult, debit

logger = StructuredLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 0.05
    max_delay: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(os.getenv("TOLLGATE_DEBIT_MAX_ATTEMPTS", "4"))),
            base_delay=max(0, int(os.getenv("TOLLGATE_DEBIT_BASE_DELAY_MS", "50"))) / 1000.0,
            max_delay=max(0, int(os.getenv("TOLLGATE_DEBIT_MAX_DELAY_MS", "2000"))) / 1000.0,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1`` (attempt numbering starts at 1)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


async def retry_storage(
    fn: Callable[..., T],
    *args: Any,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    describe: str = "storage write",
    log_fields: dict[str, Any] | None = None,
    **kwargs: Any,
) -> T:
    """Run a blocking storage call off the event loop, retrying transient failures."""
    policy = policy or RetryPolicy.from_env()
    fields = log_fields or {}
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except StorageUnavailable:
            if attempt >= policy.max_attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Transient failure during {describe}, retrying",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_s=delay,
                **fields,
            )
            await sleep(delay)

    logger.error(f"{describe} failed after retries", attempts=policy.max_attempts, **fields)
    raise PersistenceFailed()


async def debit_with_retry(
    identity_id: str,
    amount: int,
    action_id: str,
    metadata: dict[str, Any] | None = None,
    *,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> DebitResult:
    """Debit with bounded retries; every attempt reuses the same ``action_id``.

    An attempt that committed but whose acknowledgement was lost is found by
    the next attempt as a replay, so it is never applied twice.
    """
    meta = metadata or {}
    return await retry_storage(
        debit,
        identity_id,
        amount,
        action_id,
        meta,
        policy=policy,
        sleep=sleep,
        describe="token consumption",
        log_fields={
            "event": "token_consumption_failed",
            "user_id": identity_id,
            "tokens": amount,
            "tool": meta.get("operation_name"),
            "action_id": action_id,
        },
    )
