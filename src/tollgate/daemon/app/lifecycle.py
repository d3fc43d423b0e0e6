"""Tollgate daemon lifecycle: startup checks, shared services, HTTP client."""

import asyncio
import os

import httpx

from ..auth.provider import HttpIdentityProvider
from ..auth.sessions import SessionStore
from ..control.dispatcher import ExecutionDispatcher
from ..control.registry import default_registry
from ..db import check_db_integrity, init_db
from ..utils.config_loader import config_loader
from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

# Shared async client for connection pooling / keep-alive
_http_client: httpx.AsyncClient | None = None
_dispatcher: ExecutionDispatcher | None = None
_session_store: SessionStore | None = None


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=10.0,
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )
    return _http_client


def get_dispatcher() -> ExecutionDispatcher:
    global _dispatcher
    if _dispatcher is None:
        registry = default_registry()
        module = (os.getenv("TOLLGATE_OPERATIONS_MODULE") or "").strip()
        if module:
            registry.load_module(module)
        _dispatcher = ExecutionDispatcher(registry, catalog=config_loader)
    return _dispatcher


def get_session_store() -> SessionStore:
    global _session_store
    if _session_store is None:
        provider = None
        if os.getenv("TOLLGATE_IDP_BASE_URL") and os.getenv("TOLLGATE_IDP_CLIENT_ID"):
            provider = HttpIdentityProvider.from_env(client=get_http_client())
        else:
            logger.warning("No identity provider configured; expired sessions cannot be refreshed")
        _session_store = SessionStore(provider)
    return _session_store


async def startup_event(app):
    """Called on FastAPI startup."""
    strict_startup = (os.getenv("TOLLGATE_STARTUP_STRICT", "0").strip() == "1")
    init_timeout_sec = max(5, int(os.getenv("TOLLGATE_STARTUP_INIT_TIMEOUT_SECONDS", "30")))

    try:
        await asyncio.wait_for(asyncio.to_thread(init_db), timeout=init_timeout_sec)
    except Exception as exc:
        logger.error("Startup database init failed", error=str(exc), strict=strict_startup)
        if strict_startup:
            raise

    try:
        ok = await asyncio.wait_for(asyncio.to_thread(check_db_integrity), timeout=init_timeout_sec)
        if not ok:
            logger.error("Startup database integrity failed", strict=strict_startup)
            if strict_startup:
                raise RuntimeError("Database integrity check failed")
    except RuntimeError:
        raise
    except Exception as exc:
        logger.error("Startup database integrity error", error=str(exc), strict=strict_startup)
        if strict_startup:
            raise

    try:
        config_loader.load_config()
    except Exception as exc:
        logger.error("Config load failed on startup", error=str(exc), strict=strict_startup)
        if strict_startup:
            raise

    dispatcher = get_dispatcher()
    get_session_store()
    logger.info("Tollgate started", operations=dispatcher.registry.names())


async def shutdown_event():
    """Called on FastAPI shutdown."""
    global _http_client, _dispatcher, _session_store
    if _dispatcher is not None:
        _dispatcher.cache.clear()
    if _http_client and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None
    _dispatcher = None
    _session_store = None
