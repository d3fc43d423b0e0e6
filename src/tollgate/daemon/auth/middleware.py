"""API key authentication and the FastAPI identity dependency."""

from fastapi import Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..errors import IdentityDeactivated, Unauthenticated
from ..utils.logging_config import StructuredLogger
from .hashing import _MIN_KEY_HEX_LEN, hash_token
from .identities import Identity, find_identity_by_key_hash

logger = StructuredLogger(__name__)
security = HTTPBearer(auto_error=False)


def authenticate_api_key(api_key: str | None) -> Identity:
    """Resolve an API key to an active identity.

    Authentication flow:
    1. Reject missing or short keys
    2. Hash key → lookup by api_key_hash
    3. Reject deactivated identities
    """
    token = (api_key or "").strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()

    if not token:
        logger.warning("Authentication failed: Missing API key")
        raise Unauthenticated("Missing Authorization header")

    if len(token) < _MIN_KEY_HEX_LEN:
        logger.warning("Authentication failed: Key too short", length=len(token))
        raise Unauthenticated("Invalid API key: insufficient entropy")

    identity = find_identity_by_key_hash(hash_token(token))
    if identity is None:
        logger.warning("Authentication failed: Invalid key")
        raise Unauthenticated("Invalid or expired API key")

    if identity.deactivated:
        logger.warning("Authentication failed: Identity deactivated", identity=identity.identity_id)
        raise IdentityDeactivated()

    return identity


def get_identity_from_token(
    credentials: HTTPAuthorizationCredentials | None = Security(security),
) -> Identity:
    return authenticate_api_key(credentials.credentials if credentials else None)
