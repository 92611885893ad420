"""WhatsApp Business (Meta Cloud API) channel adapter."""

from __future__ import annotations

import hashlib
import hmac
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from ..conversations.models import (
    DeliveryReceipt,
    DeliveryResult,
    InboundMessage,
    OutboundMessage,
)
from ..conversations.schemas import Channel, MessageStatus, MessageType
from ..errors import AuthInvalid, MalformedPayload
from .base import ChannelAdapter

GRAPH_API_URL = "https://graph.facebook.com/v21.0"

_MEDIA_TYPES = {"image", "audio", "video", "document", "sticker"}
_RECEIPT_STATUSES = {
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "failed": MessageStatus.FAILED,
}


def canonical_phone(value: str) -> str:
    """Return the digits of a phone number or WhatsApp id."""
    return re.sub(r"\D", "", value or "")


def _parse_timestamp(raw: Any) -> datetime:
    if raw:
        try:
            return datetime.fromtimestamp(int(raw), tz=timezone.utc)
        except (ValueError, TypeError, OverflowError):
            pass
    return datetime.now(timezone.utc)


class WhatsAppAdapter(ChannelAdapter):
    channel_name = "whatsapp"
    requires_template_approval = True

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        secret = self.config.wa_webhook_secret
        if not secret:
            return True
        received = headers.get("X-Hub-Signature-256") or headers.get("x-hub-signature-256")
        if not received:
            return False
        digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        expected = f"sha256={digest}"
        return hmac.compare_digest(received, expected)

    def _message_values(self, payload: Mapping[str, Any]) -> list[Mapping[str, Any]]:
        entries = payload.get("entry")
        if not isinstance(entries, list):
            raise MalformedPayload("WhatsApp payload has no 'entry' list")
        values = []
        for entry in entries:
            for change in (entry or {}).get("changes", []):
                if change.get("field", "messages") != "messages":
                    continue
                value = change.get("value")
                if isinstance(value, Mapping):
                    values.append(value)
        return values

    def normalize_inbound(self, payload: Mapping[str, Any]) -> list[InboundMessage]:
        normalized: list[InboundMessage] = []
        for value in self._message_values(payload):
            contacts = {c.get("wa_id"): c for c in value.get("contacts", [])}
            for message in value.get("messages", []):
                normalized.append(self._from_message(message, contacts))
        return normalized

    def _from_message(
        self, message: Mapping[str, Any], contacts: Mapping[str, Any]
    ) -> InboundMessage:
        external_id = message.get("id")
        sender = canonical_phone(str(message.get("from") or ""))
        if not external_id or not sender:
            raise MalformedPayload("WhatsApp message without id or sender")
        contact = contacts.get(message.get("from")) or contacts.get(sender) or {}
        name = (contact.get("profile") or {}).get("name") or sender

        raw_type = message.get("type") or "text"
        fields: dict[str, Any] = {}
        body = ""
        message_type = MessageType.TEXT
        if raw_type == "text":
            body = (message.get("text") or {}).get("body", "")
        elif raw_type in _MEDIA_TYPES:
            media = message.get(raw_type) or {}
            message_type = MessageType.MEDIA
            caption = media.get("caption") or media.get("filename") or ""
            body = media.get("caption", "")
            # Media content has to be fetched from the Graph API by id.
            fields.update(
                media_url=media.get("id", ""),
                media_mime_type=media.get("mime_type", ""),
                media_caption=caption,
            )
        elif raw_type == "location":
            location = message.get("location") or {}
            message_type = MessageType.LOCATION
            latitude = location.get("latitude")
            longitude = location.get("longitude")
            name_hint = location.get("name") or ""
            body = name_hint or f"Location: {latitude}, {longitude}"
            fields.update(latitude=latitude, longitude=longitude, location_name=name_hint)
        elif raw_type == "interactive":
            interactive = message.get("interactive") or {}
            message_type = MessageType.INTERACTIVE
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            body = reply.get("title", "")
            fields["interactive_data"] = dict(interactive)
        elif raw_type == "button":
            message_type = MessageType.INTERACTIVE
            button = message.get("button") or {}
            body = button.get("text", "")
            fields["interactive_data"] = dict(button)
        else:
            body = f"[{raw_type} message]"

        return InboundMessage(
            channel=Channel.WHATSAPP,
            external_message_id=str(external_id),
            contact_id=sender,
            body=body,
            message_type=message_type,
            customer_name=name,
            customer_phone=sender,
            metadata={"channel_payload": dict(message), "sender": dict(contact)},
            sent_at=_parse_timestamp(message.get("timestamp")),
            **fields,
        )

    def parse_status_updates(self, payload: Mapping[str, Any]) -> list[DeliveryReceipt]:
        receipts: list[DeliveryReceipt] = []
        for value in self._message_values(payload):
            for status in value.get("statuses", []):
                mapped = _RECEIPT_STATUSES.get(status.get("status"))
                if not mapped or not status.get("id"):
                    continue
                errors = status.get("errors") or []
                error_message = ""
                if mapped is MessageStatus.FAILED:
                    error_message = (errors[0].get("message") if errors else "") or "Delivery failed"
                receipts.append(
                    DeliveryReceipt(
                        channel=Channel.WHATSAPP,
                        external_message_id=str(status["id"]),
                        status=mapped,
                        error_message=error_message,
                        at=_parse_timestamp(status.get("timestamp")),
                    )
                )
        return receipts

    def build_outgoing_payload(self, message: OutboundMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "to": canonical_phone(message.contact_id),
        }
        if message.message_type is MessageType.TEMPLATE and message.template_name:
            template: dict[str, Any] = {
                "name": message.template_name,
                "language": {"code": message.template_language or "en"},
            }
            if message.template_params:
                template["components"] = [
                    {
                        "type": "body",
                        "parameters": [
                            {"type": "text", "text": str(param)}
                            for param in message.template_params
                        ],
                    }
                ]
            payload.update(type="template", template=template)
        elif message.message_type is MessageType.MEDIA and message.media_url:
            payload.update(
                type="document",
                document={"link": message.media_url, "caption": message.media_caption},
            )
        else:
            payload.update(type="text", text={"body": message.body})
        return payload

    def dispatch_outbound(self, message: OutboundMessage) -> DeliveryResult:
        if not self.config.wa_access_token or not self.config.wa_phone_number_id:
            raise AuthInvalid("WhatsApp is not configured for this account")
        data = self._post_json(
            f"{GRAPH_API_URL}/{self.config.wa_phone_number_id}/messages",
            self.build_outgoing_payload(message),
            {
                "Authorization": f"Bearer {self.config.wa_access_token}",
                "Content-Type": "application/json",
            },
        )
        messages = data.get("messages") or []
        external_id = (messages[0] or {}).get("id") if messages else None
        if not external_id:
            raise MalformedPayload("WhatsApp accepted the request without a message id")
        return DeliveryResult(external_message_id=str(external_id), provider_response=data)
