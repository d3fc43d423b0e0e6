"""Tollgate daemon application package.

Creates the FastAPI app, registers routers, and wires up lifecycle events.
Re-exports `app` so consumers can use:
    from tollgate.daemon.app import app
"""

import os

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ... import __version__
from ..errors import GatewayError
from ..utils.logging_config import setup_logging

load_dotenv()
setup_logging(os.getenv("TOLLGATE_LOG_LEVEL", "INFO"))

app = FastAPI(title="Tollgate", version=__version__)


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# --- Lifecycle ---
from .lifecycle import shutdown_event, startup_event


@app.on_event("startup")
async def _startup():
    await startup_event(app)


@app.on_event("shutdown")
async def _shutdown():
    await shutdown_event()


# --- Routers ---
from .gateway import router as gateway_router
from .health import router as health_router

app.include_router(health_router)
app.include_router(gateway_router)

__all__ = ["app"]
