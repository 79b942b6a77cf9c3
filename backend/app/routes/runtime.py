# /app/routes/runtime.py

import structlog
from fastapi import APIRouter, Depends, HTTPException

from app.models.api import (
    StartFlowRequest,
    ContinueSessionRequest,
    ResumeWaitRequest,
    TagAddedRequest,
    RuntimeResult,
)
from app.models.events import InboundEvent
from app.services.flow_runtime import flow_runtime
from app.utils.dependencies import verify_api_key
from app.utils.phone import normalize_phone

# Direct access to the flow runtime for other backends: starting a flow for a
# contact, feeding a reply, resuming a wait, resetting a contact and firing
# tag-added triggers. All routes are guarded by the API key when configured.
# Missing flows/sessions map to 404 and exhausted retries to 409 in app.main.

router = APIRouter(
    tags=["Runtime"],
    dependencies=[Depends(verify_api_key)],
)

log = structlog.get_logger(__name__)


@router.post("/runtime/start", response_model=RuntimeResult)
async def start_flow(request: StartFlowRequest):
    """Starts a flow for a contact, skipping trigger evaluation."""
    log.info("Flow start requested", flow_id=request.flow_id)
    return await flow_runtime.start_flow(request.flow_id, request.channel_address, request.variables)

@router.post("/runtime/continue", response_model=RuntimeResult)
async def continue_session(request: ContinueSessionRequest):
    """Feeds a reply to the contact's session in the given flow."""
    return await flow_runtime.continue_session(
        request.channel_address, request.flow_id, request.text, reply_id=request.reply_id
    )

@router.post("/runtime/resume", response_model=RuntimeResult)
async def resume_wait(request: ResumeWaitRequest):
    """Resumes a session parked at a wait step. Stale or early requests are no-ops."""
    return await flow_runtime.resume_wait(request.session_id)

@router.delete("/sessions/{address}", response_model=RuntimeResult)
async def reset_sessions(address: str):
    """Deletes every session of a contact."""
    if not normalize_phone(address):
        raise HTTPException(status_code=422, detail="Invalid address")
    return await flow_runtime.reset(address)

@router.post("/triggers/tag-added", response_model=RuntimeResult)
async def tag_added(request: TagAddedRequest):
    """Fires tag-added triggers for a contact."""
    event = InboundEvent(
        channel_address=request.channel_address,
        kind="tag_added",
        tag_id=request.tag_id,
        device_id=request.device_id,
        contact_name=request.contact_name,
        contact_id=request.contact_id,
    )
    return await flow_runtime.handle_inbound_event(event)
