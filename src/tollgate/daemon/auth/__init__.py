"""Authentication: API keys, identities and sessions."""

from .hashing import generate_api_key, hash_token
from .identities import (
    Identity,
    create_identity,
    deactivate_identity,
    get_identity,
    rotate_api_key,
    top_up,
)
from .middleware import authenticate_api_key, get_identity_from_token
from .provider import (
    HttpIdentityProvider,
    IdentityProvider,
    IdentityProviderError,
    ProviderUnavailable,
    RefreshGrant,
    RefreshRejected,
)
from .sessions import SessionReason, SessionRecord, SessionStore, SessionValidation

__all__ = [
    "generate_api_key",
    "hash_token",
    "Identity",
    "create_identity",
    "deactivate_identity",
    "get_identity",
    "rotate_api_key",
    "top_up",
    "authenticate_api_key",
    "get_identity_from_token",
    "HttpIdentityProvider",
    "IdentityProvider",
    "IdentityProviderError",
    "ProviderUnavailable",
    "RefreshGrant",
    "RefreshRejected",
    "SessionReason",
    "SessionRecord",
    "SessionStore",
    "SessionValidation",
]
