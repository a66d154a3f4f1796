from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from leadflow.logging_config import get_logger
from leadflow.runtime import Runtime, get_runtime
from leadflow.schemas.conversation import AgentRole, ConversationState, OutboundAction
from leadflow.services.identity_service import normalize_phone
from leadflow.services.result import Result

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])

ERROR_STATUS = {
    "not_found": 404,
    "invalid_state": 409,
    "invalid_transition": 409,
    "command_error": 500,
}


class HandoffRequest(BaseModel):
    to_role: AgentRole
    note: str = ""


class HandoffResponse(BaseModel):
    success: bool
    dispatched: bool
    action: Optional[OutboundAction] = None


class UnblockResponse(BaseModel):
    success: bool
    current_phase: str


def _require_admin_token(runtime: Runtime, provided: Optional[str]) -> None:
    expected = runtime.settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _contact_key(runtime: Runtime, contact: str) -> str:
    key = normalize_phone(contact, runtime.settings.default_country_code)
    if not key:
        raise HTTPException(status_code=400, detail=f"Invalid contact '{contact}'")
    return key


def _raise_for(result: Result) -> None:
    if not result.ok:
        raise HTTPException(status_code=ERROR_STATUS.get(result.error_code, 400), detail=result.error)


@router.get("/conversations/{contact}", response_model=ConversationState)
async def get_conversation(
    contact: str,
    runtime: Runtime = Depends(get_runtime),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(runtime, x_admin_token)
    state = await runtime.engine.get_state(_contact_key(runtime, contact))
    if state is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return state


@router.post("/conversations/{contact}/handoff", response_model=HandoffResponse)
async def trigger_handoff(
    contact: str,
    request: HandoffRequest,
    runtime: Runtime = Depends(get_runtime),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(runtime, x_admin_token)
    key = _contact_key(runtime, contact)
    result = await runtime.run_for_contact(
        key,
        "external_handoff",
        lambda: runtime.engine.external_handoff(key, request.to_role, request.note),
    )
    _raise_for(result)
    outcome = result.value
    logger.info(
        "Admin handoff",
        extra={"context": {"contact": key, "to_role": request.to_role.value, "dispatched": outcome.dispatched}},
    )
    return HandoffResponse(success=True, dispatched=outcome.dispatched, action=outcome.action)


@router.post("/conversations/{contact}/unblock", response_model=UnblockResponse)
async def unblock_conversation(
    contact: str,
    runtime: Runtime = Depends(get_runtime),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(runtime, x_admin_token)
    key = _contact_key(runtime, contact)
    result = await runtime.run_for_contact(key, "unblock", lambda: runtime.engine.unblock(key))
    _raise_for(result)
    return UnblockResponse(success=True, current_phase=result.value.current_phase.value)


@router.get("/runtime")
async def runtime_stats(
    runtime: Runtime = Depends(get_runtime),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(runtime, x_admin_token)
    return runtime.stats()
