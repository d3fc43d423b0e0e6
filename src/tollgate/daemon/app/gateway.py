"""Tollgate gateway endpoints: metered invocations, balance, sessions."""

from typing import Any

from fastapi import APIRouter, Depends, Header
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..auth.identities import Identity
from ..auth.middleware import get_identity_from_token
from ..errors import ERROR_STATUS, IdentityDeactivated
from ..ledger.balance import get_balance
from .lifecycle import get_dispatcher, get_session_store

router = APIRouter(prefix="/v1", tags=["gateway"])


class InvocationRequest(BaseModel):
    input: Any = None
    action_id: str | None = Field(default=None, min_length=1, max_length=256)


class SessionTokenRequest(BaseModel):
    session_token: str = Field(..., max_length=512)


@router.post("/operations/{operation_name}")
async def invoke_operation(
    operation_name: str,
    body: InvocationRequest,
    identity: Identity = Depends(get_identity_from_token),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    outcome = await get_dispatcher().invoke(
        identity,
        operation_name,
        body.input,
        action_id=body.action_id,
        idempotency_key=idempotency_key,
    )
    status_code = 200 if outcome.success else ERROR_STATUS.get(outcome.error_code, 500)
    return JSONResponse(
        status_code=status_code,
        content=outcome.to_dict(),
        headers={"X-Tollgate-Action-Id": outcome.action_id},
    )


@router.get("/balance")
async def read_balance(identity: Identity = Depends(get_identity_from_token)):
    balance = await run_in_threadpool(get_balance, identity.identity_id)
    if balance is None:
        raise IdentityDeactivated()
    return {"identity_id": identity.identity_id, "balance": balance}


@router.post("/sessions/validate")
async def validate_session(body: SessionTokenRequest):
    validation = await get_session_store().validate_and_refresh(body.session_token)
    if not validation.valid:
        return JSONResponse(
            status_code=401,
            content={"valid": False, "reason": str(validation.reason)},
        )
    session = validation.session
    return {
        "valid": True,
        "identity_id": session.identity_id,
        "email": session.email,
        "expires_at": session.expires_at,
        "last_accessed_at": session.last_accessed_at,
    }


@router.post("/sessions/revoke")
async def revoke_session(body: SessionTokenRequest):
    revoked = await run_in_threadpool(get_session_store().revoke_session, body.session_token)
    return {"revoked": revoked}
