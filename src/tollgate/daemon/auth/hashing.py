"""API key hashing utilities for Tollgate authentication."""

import hashlib
import secrets

# Minimum key length in hex chars (16 bytes)
_MIN_KEY_HEX_LEN = 32


def hash_token(raw_token: str) -> str:
    """SHA-256 hash a raw key or credential for storage/lookup."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    return "tg_" + secrets.token_hex(24)
