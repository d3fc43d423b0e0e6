"""Deterministic serialization and digests for idempotency and audit."""

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    """Serialize data into stable JSON so equal payloads digest equally."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def stable_hash_hex(*parts: str) -> str:
    """Create a stable SHA-256 digest over multiple string parts."""
    h = hashlib.sha256()
    for part in parts:
        h.update(part.encode("utf-8"))
        h.update(b"\n")
    return h.hexdigest()


def input_digest(operation_name: str, payload: Any) -> str:
    """Digest binding an action id to the operation and input it was issued for."""
    return stable_hash_hex("input", operation_name, canonical_json(payload if payload is not None else {}))


def outcome_digest(outcome_text: str) -> str:
    return stable_hash_hex("outcome", outcome_text)
