"""Storefront web chat widget adapter.

The widget posts visitor messages directly and polls the conversation for
replies, so outbound dispatch only has to hand back an external id.
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from ..conversations.models import DeliveryResult, InboundMessage, OutboundMessage
from ..conversations.schemas import Channel
from ..errors import MalformedPayload
from .base import ChannelAdapter


def _derive_message_id(session_id: str, sent_at: str, text: str) -> str:
    digest = hashlib.sha256(f"{session_id}|{sent_at}|{text}".encode("utf-8"))
    return f"wc-{digest.hexdigest()[:32]}"


class WebChatAdapter(ChannelAdapter):
    channel_name = "web_chat"

    def normalize_inbound(self, payload: Mapping[str, Any]) -> list[InboundMessage]:
        session_id = str(payload.get("sessionId") or "").strip()
        text = str(payload.get("message") or "").strip()
        if not session_id or not text:
            raise MalformedPayload("Web chat payload requires sessionId and message")

        raw_sent_at = payload.get("sentAt")
        sent_at = datetime.now(timezone.utc)
        if raw_sent_at:
            try:
                sent_at = datetime.fromisoformat(str(raw_sent_at).replace("Z", "+00:00"))
            except ValueError as exc:
                raise MalformedPayload(f"Invalid sentAt value: {raw_sent_at}") from exc
            if sent_at.tzinfo is None:
                sent_at = sent_at.replace(tzinfo=timezone.utc)

        external_id = payload.get("messageId")
        if not external_id:
            # Retries only dedupe when the id is stable across deliveries.
            if not raw_sent_at:
                raise MalformedPayload("Web chat payload requires messageId or sentAt")
            external_id = _derive_message_id(session_id, str(raw_sent_at), text)

        metadata: dict[str, Any] = {}
        if payload.get("customerId"):
            metadata["customer_id"] = str(payload["customerId"])

        return [
            InboundMessage(
                channel=Channel.WEB_CHAT,
                external_message_id=str(external_id),
                contact_id=session_id,
                body=text,
                customer_name=str(payload.get("customerName") or "Visitor"),
                customer_email=str(payload.get("customerEmail") or "").strip().lower(),
                metadata=metadata,
                sent_at=sent_at,
            )
        ]

    def dispatch_outbound(self, message: OutboundMessage) -> DeliveryResult:
        return DeliveryResult(external_message_id=f"wc-out-{message.message_id or uuid4()}")
