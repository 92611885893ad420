"""Per-tenant quick reply shortcuts."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Response, status

from ..conversations import schemas as convo_schemas
from ..engine import MessagingEngine
from .common import engine_errors, get_engine

router = APIRouter(
    prefix="/api/messaging/tenants/{tenant_id}/quick-replies", tags=["quick-replies"]
)


@router.get("", response_model=list[convo_schemas.QuickReply])
def list_quick_replies(
    tenant_id: UUID, engine: MessagingEngine = Depends(get_engine)
) -> list[convo_schemas.QuickReply]:
    return engine.quick_replies.list(tenant_id)


@router.get("/{shortcut}", response_model=convo_schemas.QuickReply)
def get_quick_reply(
    tenant_id: UUID, shortcut: str, engine: MessagingEngine = Depends(get_engine)
) -> convo_schemas.QuickReply:
    with engine_errors():
        return engine.quick_replies.get(tenant_id, shortcut)


@router.put("/{shortcut}", response_model=convo_schemas.QuickReply)
def upsert_quick_reply(
    tenant_id: UUID,
    shortcut: str,
    payload: convo_schemas.QuickReplyUpsert,
    engine: MessagingEngine = Depends(get_engine),
) -> convo_schemas.QuickReply:
    return engine.quick_replies.upsert(tenant_id, shortcut, payload)


@router.delete("/{shortcut}", status_code=status.HTTP_204_NO_CONTENT)
def delete_quick_reply(
    tenant_id: UUID, shortcut: str, engine: MessagingEngine = Depends(get_engine)
) -> Response:
    with engine_errors():
        engine.quick_replies.delete(tenant_id, shortcut)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{shortcut}/expand")
def expand_quick_reply(
    tenant_id: UUID, shortcut: str, engine: MessagingEngine = Depends(get_engine)
) -> dict[str, str]:
    with engine_errors():
        return {"shortcut": shortcut, "body": engine.quick_replies.expand(tenant_id, shortcut)}
