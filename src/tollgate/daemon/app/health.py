"""Liveness and readiness endpoints."""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from ... import __version__
from ..db import get_db_connection
from ..utils.config_loader import config_loader
from ..utils.invariants import run_all_checks

router = APIRouter(tags=["health"])

_READINESS_CRITICAL_INVARIANTS = {
    "no_negative_balances",
    "every_identity_has_balance",
}


def liveness_report() -> dict:
    return {
        "status": "ok",
        "version": __version__,
        "ts": datetime.now(UTC).isoformat(),
    }


def readiness_report() -> tuple[bool, dict]:
    checks: dict[str, dict] = {}
    ready = True

    try:
        with get_db_connection() as conn:
            conn.execute("SELECT 1").fetchone()
            checks["database"] = {"ok": True}

            failed = [c for c in run_all_checks(conn) if not c.passed]
            critical = [c for c in failed if c.name in _READINESS_CRITICAL_INVARIANTS]
            checks["invariants"] = {
                "ok": len(critical) == 0,
                "failed": [{"name": c.name, "detail": c.detail} for c in failed],
            }
            if critical:
                ready = False
    except Exception as exc:
        checks["database"] = {"ok": False, "error": type(exc).__name__}
        ready = False

    try:
        catalog = config_loader.config or config_loader.load_config()
        checks["config"] = {"ok": True, "operations": sorted(catalog.operations)}
    except Exception as exc:
        checks["config"] = {"ok": False, "error": str(exc)}
        ready = False

    payload = {
        "ready": ready,
        "status": "ready" if ready else "not_ready",
        "version": __version__,
        "ts": datetime.now(UTC).isoformat(),
        "checks": checks,
    }
    return ready, payload


@router.get("/health")
async def health():
    return liveness_report()


@router.get("/ready")
async def ready():
    ready_ok, report = await run_in_threadpool(readiness_report)
    return JSONResponse(content=report, status_code=200 if ready_ok else 503)
