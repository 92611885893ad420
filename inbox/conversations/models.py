"""Domain records exchanged between adapters, the router and the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from .schemas import (
    Channel,
    Conversation,
    Message,
    MessageStatus,
    MessageType,
)


@dataclass
class InboundMessage:
    """Uniform representation of inbound channel messages."""

    channel: Channel
    external_message_id: str
    contact_id: str
    body: str
    message_type: MessageType = MessageType.TEXT
    customer_name: str = ""
    customer_phone: str = ""
    customer_email: str = ""
    media_url: str = ""
    media_mime_type: str = ""
    media_caption: str = ""
    interactive_data: dict[str, Any] = field(default_factory=dict)
    latitude: float | None = None
    longitude: float | None = None
    location_name: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class OutboundMessage:
    """What an adapter needs to deliver a stored outbound message."""

    channel: Channel
    contact_id: str
    body: str
    message_type: MessageType = MessageType.TEXT
    message_id: UUID | None = None
    subject: str = ""
    template_name: str = ""
    template_language: str = "en"
    template_params: list[Any] = field(default_factory=list)
    media_url: str = ""
    media_caption: str = ""

    @classmethod
    def from_message(cls, message: Message, contact_id: str) -> "OutboundMessage":
        return cls(
            channel=message.channel,
            contact_id=contact_id,
            body=message.body,
            message_type=message.message_type,
            message_id=message.id,
            template_name=message.template_name,
            template_params=list(message.template_params),
            media_url=message.media_url,
            media_caption=message.media_caption,
        )


@dataclass
class DeliveryResult:
    external_message_id: str
    status: MessageStatus = MessageStatus.SENT
    attempts: int = 1
    provider_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryReceipt:
    """Provider notification about a previously sent message."""

    channel: Channel
    external_message_id: str
    status: MessageStatus
    error_message: str = ""
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventKind(str, Enum):
    NEW_MESSAGE = "new_message"
    NEW_CONVERSATION = "new_conversation"
    TIME_ELAPSED = "time_elapsed"


@dataclass
class EngineEvent:
    kind: EventKind
    config_id: UUID
    channel: Channel
    conversation: Conversation
    message: Message | None = None


@dataclass
class RouteResult:
    conversation: Conversation
    message: Message | None
    created: bool = False
    duplicate: bool = False
    events: list[EngineEvent] = field(default_factory=list)
