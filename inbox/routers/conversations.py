"""Conversation management and outbound send routes."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..conversations import schemas as convo_schemas
from ..engine import MessagingEngine
from ..errors import ChannelDispatchFailure
from .common import engine_errors, get_engine

router = APIRouter(tags=["conversations"])

_CONVERSATIONS = "/api/messaging/configs/{config_id}/conversations"


@router.post("/api/messaging/send", response_model=convo_schemas.OutboundSendResponse)
async def send_message(
    payload: convo_schemas.OutboundSendRequest,
    engine: MessagingEngine = Depends(get_engine),
):
    """Persist and dispatch an agent reply into an existing conversation.

    Every missing field is reported at once. A failed dispatch still leaves
    the message stored with ``status=failed`` so the inbox can offer a retry.
    """

    missing = [
        name
        for name in ("config_id", "conversation_id", "contact_id", "channel")
        if getattr(payload, name) in (None, "")
    ]
    if not (payload.body and payload.body.strip()) and not payload.quick_reply:
        missing.append("body")
    if missing:
        return JSONResponse(
            status_code=400, content={"error": "missing_fields", "fields": missing}
        )

    try:
        with engine_errors():
            result = await engine.send(
                payload.config_id,
                payload.conversation_id,
                payload.body,
                channel=payload.channel,
                contact_id=payload.contact_id,
                quick_reply=payload.quick_reply,
            )
    except ChannelDispatchFailure as exc:
        return JSONResponse(
            status_code=500,
            content={
                "error": "dispatch_failed",
                "transient": exc.transient,
                "detail": str(exc),
                "message_id": str(exc.message_id) if exc.message_id else None,
            },
        )
    return convo_schemas.OutboundSendResponse(
        message=result.message,
        external_message_id=result.delivery.external_message_id,
        attempts=result.delivery.attempts,
    )


@router.get(_CONVERSATIONS, response_model=convo_schemas.ConversationList)
def list_conversations(
    config_id: UUID,
    status: convo_schemas.ConversationStatus | None = None,
    limit: int = 50,
    engine: MessagingEngine = Depends(get_engine),
) -> convo_schemas.ConversationList:
    with engine_errors():
        items = engine.list_conversations(config_id, status=status, limit=limit)
    return convo_schemas.ConversationList(items=items, total=len(items))


@router.get(
    _CONVERSATIONS + "/{conversation_id}",
    response_model=convo_schemas.ConversationDetail,
)
def get_conversation(
    config_id: UUID,
    conversation_id: UUID,
    engine: MessagingEngine = Depends(get_engine),
) -> convo_schemas.ConversationDetail:
    with engine_errors():
        conversation = engine.get_conversation(config_id, conversation_id)
        messages = engine.list_messages(config_id, conversation_id)
    return convo_schemas.ConversationDetail(**conversation.model_dump(), messages=messages)


@router.post(_CONVERSATIONS + "/{conversation_id}/read", response_model=convo_schemas.Conversation)
async def mark_read(
    config_id: UUID,
    conversation_id: UUID,
    engine: MessagingEngine = Depends(get_engine),
):
    with engine_errors():
        return await engine.mark_read(config_id, conversation_id)


@router.post(_CONVERSATIONS + "/{conversation_id}/assign", response_model=convo_schemas.Conversation)
async def assign_conversation(
    config_id: UUID,
    conversation_id: UUID,
    payload: convo_schemas.AssignRequest,
    engine: MessagingEngine = Depends(get_engine),
):
    with engine_errors():
        return await engine.assign(config_id, conversation_id, payload.agent)


@router.post(_CONVERSATIONS + "/{conversation_id}/status", response_model=convo_schemas.Conversation)
async def set_status(
    config_id: UUID,
    conversation_id: UUID,
    payload: convo_schemas.StatusRequest,
    engine: MessagingEngine = Depends(get_engine),
):
    with engine_errors():
        return await engine.set_status(config_id, conversation_id, payload.status)


@router.post(_CONVERSATIONS + "/{conversation_id}/priority", response_model=convo_schemas.Conversation)
async def set_priority(
    config_id: UUID,
    conversation_id: UUID,
    payload: convo_schemas.PriorityRequest,
    engine: MessagingEngine = Depends(get_engine),
):
    with engine_errors():
        return await engine.set_priority(config_id, conversation_id, payload.priority)


@router.post(
    _CONVERSATIONS + "/{conversation_id}/release-escalation",
    response_model=convo_schemas.Conversation,
)
async def release_escalation(
    config_id: UUID,
    conversation_id: UUID,
    engine: MessagingEngine = Depends(get_engine),
):
    """Explicit human action handing the conversation back to the assistant."""

    with engine_errors():
        return await engine.release_escalation(config_id, conversation_id)
