"""Action id resolution for inbound invocations."""

from __future__ import annotations

import uuid

from ..utils.deterministic import stable_hash_hex

IDEMPOTENCY_HEADER = "idempotency-key"


def new_action_id() -> str:
    return uuid.uuid4().hex


def resolve_action_id(
    *,
    identity_id: str,
    operation_name: str,
    action_id: str | None = None,
    idempotency_key: str | None = None,
) -> str:
    """Pick the action id for one logical request.

    An explicit action id wins; an idempotency key is namespaced by identity
    and operation so two callers cannot collide; otherwise a fresh id is
    generated. Callers resolve once and reuse the value across retries.
    """
    forced = (action_id or "").strip()
    if forced:
        return forced
    key = (idempotency_key or "").strip()
    if key:
        return stable_hash_hex(identity_id, "operation", operation_name, key)
    return new_action_id()
