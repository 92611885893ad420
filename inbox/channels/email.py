"""Email channel adapter.

Inbound mail arrives through the provider's inbound-parse webhook as JSON;
outbound mail is posted to the provider's HTTP send API.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any

from ..conversations.models import DeliveryResult, InboundMessage, OutboundMessage
from ..conversations.schemas import Channel
from ..errors import AuthInvalid, MalformedPayload
from .base import ChannelAdapter


def canonical_address(value: str) -> str:
    _, address = parseaddr(value or "")
    return address.strip().lower()


class EmailAdapter(ChannelAdapter):
    channel_name = "email"

    def normalize_inbound(self, payload: Mapping[str, Any]) -> list[InboundMessage]:
        external_id = str(payload.get("MessageID") or payload.get("Message-Id") or "").strip()
        sender = canonical_address(str(payload.get("From") or ""))
        if not external_id or not sender:
            raise MalformedPayload("Inbound email requires MessageID and From")

        text = (payload.get("StrippedTextReply") or payload.get("TextBody") or "").strip()
        subject = str(payload.get("Subject") or "").strip()
        sent_at = datetime.now(timezone.utc)
        if payload.get("Date"):
            try:
                sent_at = parsedate_to_datetime(str(payload["Date"]))
            except (TypeError, ValueError):
                pass
            if sent_at.tzinfo is None:
                sent_at = sent_at.replace(tzinfo=timezone.utc)

        return [
            InboundMessage(
                channel=Channel.EMAIL,
                external_message_id=external_id,
                contact_id=sender,
                body=text or subject,
                customer_name=str(payload.get("FromName") or sender),
                customer_email=sender,
                metadata={"subject": subject, "to": payload.get("To")},
                sent_at=sent_at,
            )
        ]

    def dispatch_outbound(self, message: OutboundMessage) -> DeliveryResult:
        config = self.config
        if not config.email_api_url or not config.email_api_token:
            raise AuthInvalid("Email sending is not configured for this account")
        if not config.email_from_address:
            raise MalformedPayload("Email sender address is missing")
        subject = message.subject or f"Re: your message to {config.business_name or 'us'}"
        data = self._post_json(
            config.email_api_url,
            {
                "From": config.email_from_address,
                "To": message.contact_id,
                "Subject": subject,
                "TextBody": message.body,
            },
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Authorization": f"Bearer {config.email_api_token}",
            },
        )
        external_id = data.get("MessageID") or data.get("id")
        if not external_id:
            raise MalformedPayload("Email provider returned no message id")
        return DeliveryResult(external_message_id=str(external_id), provider_response=data)
