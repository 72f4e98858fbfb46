import asyncio

from fastapi import APIRouter, Depends, HTTPException

from agentbridge.core.errors import BridgeError
from agentbridge.core.history import load_agent_transcript, load_transcript
from agentbridge.core.models import ApprovalBehavior, ApprovalDecision
from agentbridge.server.auth import require_api_key
from agentbridge.server.runtime import get_runtime
from agentbridge.server.schemas import (
    ApprovalRequestBody,
    AutoApproveRequest,
    CreateChatRequest,
    SendMessageRequest,
)


router = APIRouter(prefix="/web-chats", tags=["web-chats"], dependencies=[Depends(require_api_key)])


def _http_error(e: BridgeError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


@router.get("")
async def list_chats():
    chats = [chat.to_dict() for chat in get_runtime().registry.list_chats()]
    return {"chats": chats, "count": len(chats)}


@router.post("", status_code=201)
async def create_chat(request: CreateChatRequest):
    registry = get_runtime().registry
    session = await registry.create(
        request.cwd,
        name=request.name,
        system_prompt=request.system_prompt,
        resume_conversation_id=request.session_id,
        permission_mode=request.permission_mode,
    )
    return {**session.info().to_dict(), "mode": "streaming"}


@router.post("/cleanup")
async def cleanup_chats():
    cleaned = await get_runtime().registry.cleanup()
    return {"cleaned": cleaned}


@router.get("/{chat_id}")
async def get_chat(chat_id: str):
    try:
        return get_runtime().registry.get(chat_id).info().to_dict()
    except BridgeError as e:
        raise _http_error(e)


@router.post("/{chat_id}/message")
async def send_message(chat_id: str, request: SendMessageRequest):
    if not request.content and not request.attachments:
        raise HTTPException(status_code=400, detail="content or attachments required")

    attachments = [a.to_attachment() for a in request.attachments]
    try:
        await get_runtime().registry.send_message(chat_id, request.content, attachments)
    except BridgeError as e:
        raise _http_error(e)
    return {"status": "sent", "mode": "streaming"}


@router.delete("/{chat_id}")
async def stop_chat(chat_id: str):
    try:
        await get_runtime().registry.stop(chat_id)
    except BridgeError as e:
        raise _http_error(e)
    return {"status": "stopped"}


@router.get("/{chat_id}/auto-approve")
async def get_auto_approve(chat_id: str):
    try:
        enabled = get_runtime().registry.get_auto_approve(chat_id)
    except BridgeError as e:
        raise _http_error(e)
    return {"chat_id": chat_id, "auto_approve": enabled}


@router.post("/{chat_id}/auto-approve")
async def set_auto_approve(chat_id: str, request: AutoApproveRequest):
    try:
        resolved = await get_runtime().registry.set_auto_approve(chat_id, request.enabled)
    except BridgeError as e:
        raise _http_error(e)
    return {"status": "ok", "auto_approve": request.enabled, "resolved": resolved}


@router.get("/{chat_id}/approvals")
async def list_approvals(chat_id: str):
    try:
        pending = get_runtime().registry.pending_approvals(chat_id)
    except BridgeError as e:
        raise _http_error(e)
    approvals = [request.to_dict(chat_id) for request in pending]
    return {"chat_id": chat_id, "approvals": approvals, "count": len(approvals)}


@router.post("/{chat_id}/approve")
async def respond_to_approval(chat_id: str, request: ApprovalRequestBody):
    if request.behavior == ApprovalBehavior.ALLOW:
        decision = ApprovalDecision.allow(request.updated_input)
    else:
        decision = ApprovalDecision.deny(request.message)

    try:
        await get_runtime().registry.respond_to_approval(chat_id, request.request_id, decision)
    except BridgeError as e:
        raise _http_error(e)
    return {"status": "responded", "behavior": request.behavior.value, "request_id": request.request_id}


@router.get("/{chat_id}/transcript")
async def get_transcript(chat_id: str):
    runtime = get_runtime()
    try:
        session = runtime.registry.get(chat_id)
    except BridgeError as e:
        raise _http_error(e)

    entries = await asyncio.to_thread(
        load_transcript, runtime.config.projects_dir, session.cwd, session.conversation_id
    )
    return {
        "chat_id": chat_id,
        "entries": [entry.to_dict() for entry in entries],
        "entry_count": len(entries),
    }


@router.get("/{chat_id}/agents/{agent_id}/transcript")
async def get_agent_transcript(chat_id: str, agent_id: str):
    runtime = get_runtime()
    try:
        session = runtime.registry.get(chat_id)
        entries = await asyncio.to_thread(
            load_agent_transcript, runtime.config.projects_dir, session.cwd, session.conversation_id, agent_id
        )
    except BridgeError as e:
        raise _http_error(e)
    return {
        "agent_id": agent_id,
        "chat_id": chat_id,
        "entries": [entry.to_dict() for entry in entries],
        "entry_count": len(entries),
    }
