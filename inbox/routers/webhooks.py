"""Webhook ingestion routes for external messaging channels.

Also serves the storefront widget's session history, the read side of the
web chat channel.
"""

from __future__ import annotations

import json
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from ..conversations import schemas as convo_schemas
from ..core.settings import EngineSettings
from ..engine import IngestResult, MessagingEngine
from ..errors import ConfigNotFound
from .common import engine_errors, get_engine, limiter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def webhook_rate_limit() -> str:
    """Current ``WEBHOOK_RATE_LIMIT``; slowapi evaluates it per request."""
    return EngineSettings.from_env().webhook_rate_limit


def _accepted(result: IngestResult) -> JSONResponse:
    summary = convo_schemas.IngestSummary(
        processed_messages=result.processed,
        duplicates=result.duplicates,
        receipts=result.receipts,
        dropped=result.dropped,
        conversation_ids=result.conversation_ids,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED, content=summary.model_dump(mode="json")
    )


@router.post("/api/messaging/webhooks/{config_id}/{channel}")
@limiter.limit(webhook_rate_limit)
async def ingest_webhook(
    config_id: UUID,
    channel: str,
    request: Request,
    engine: MessagingEngine = Depends(get_engine),
) -> JSONResponse:
    """Ingest one provider delivery.

    Malformed bodies are logged and acknowledged with ``dropped=1`` so the
    provider does not redeliver them.
    """

    channel_name = channel.lower()
    if channel_name not in {c.value for c in convo_schemas.Channel}:
        raise HTTPException(status_code=404, detail=f"Channel '{channel}' is not configured")

    body_bytes = await request.body()
    try:
        payload = json.loads(body_bytes.decode("utf-8")) if body_bytes else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.warning(
            "Dropped %s webhook for config %s: invalid JSON (%s)", channel_name, config_id, exc
        )
        return _accepted(IngestResult(dropped=1))
    if not isinstance(payload, dict):
        logger.warning(
            "Dropped %s webhook for config %s: payload is not an object",
            channel_name,
            config_id,
        )
        return _accepted(IngestResult(dropped=1))

    with engine_errors():
        result = await engine.ingest(
            config_id,
            channel_name,
            payload,
            body=body_bytes,
            headers=request.headers,
        )
    return _accepted(result)


@router.get("/api/messaging/webhooks/{config_id}/whatsapp")
async def verify_whatsapp_webhook(
    config_id: UUID,
    request: Request,
    engine: MessagingEngine = Depends(get_engine),
) -> PlainTextResponse:
    """Meta's subscription handshake: echo ``hub.challenge`` on a token match."""

    params = request.query_params
    try:
        config = engine.get_config(config_id)
    except ConfigNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if (
        params.get("hub.mode") != "subscribe"
        or not config.wa_verify_token
        or params.get("hub.verify_token") != config.wa_verify_token
    ):
        raise HTTPException(status_code=403, detail="Verification failed")
    return PlainTextResponse(params.get("hub.challenge", ""))


@router.get(
    "/api/messaging/chat/{config_id}", response_model=convo_schemas.WidgetState
)
@limiter.limit(webhook_rate_limit)
def web_chat_session(
    config_id: UUID,
    request: Request,
    session_id: str = Query(..., alias="sessionId", min_length=1),
    engine: MessagingEngine = Depends(get_engine),
) -> convo_schemas.WidgetState:
    """Widget settings plus the visitor's messages, oldest first.

    The widget polls this to show agent and assistant replies.
    """

    with engine_errors():
        config, conversation, messages = engine.web_chat_session(config_id, session_id)
    return convo_schemas.WidgetState(
        config=convo_schemas.WidgetSettings(
            title=config.chat_widget_title,
            greeting=config.chat_widget_greeting,
            business_name=config.business_name,
        ),
        conversation_id=conversation.id if conversation else None,
        messages=[
            convo_schemas.WidgetMessage.model_validate(m.model_dump()) for m in messages
        ],
    )
