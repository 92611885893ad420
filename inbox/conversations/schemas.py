"""Pydantic schemas for the messaging domain and its management APIs."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Channel(str, Enum):
    WEB_CHAT = "web_chat"
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class ConversationStatus(str, Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    RESOLVED = "resolved"
    SPAM = "spam"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageType(str, Enum):
    TEXT = "text"
    MEDIA = "media"
    TEMPLATE = "template"
    INTERACTIVE = "interactive"
    LOCATION = "location"


class MessageStatus(str, Enum):
    RECEIVED = "received"
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class ApprovalStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class MessagingConfig(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    tenant_id: UUID
    channels_enabled: list[Channel] = Field(
        default_factory=lambda: [Channel.WEB_CHAT]
    )
    business_name: str = ""
    # WhatsApp Business credentials
    wa_phone_number_id: str = ""
    wa_business_account_id: str = ""
    wa_access_token: str = ""
    wa_verify_token: str = ""
    wa_webhook_secret: str = ""
    # Email provider credentials
    email_from_address: str = ""
    email_api_url: str = ""
    email_api_token: str = ""
    # Web chat widget
    chat_widget_title: str = "Chat with us"
    chat_widget_greeting: str = ""
    # AI assistant
    ai_enabled: bool = False
    ai_persona: str = ""
    ai_escalation_keywords: list[str] = Field(default_factory=list)
    ai_auto_reply_delay_ms: int = Field(default=0, ge=0)
    ai_min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    ai_handle_support: bool = True
    # Notifications
    notify_new_message: bool = False
    notify_new_conversation: bool = True
    notification_recipients: list[str] = Field(default_factory=list)
    is_active: bool = True
    is_verified: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def channel_enabled(self, channel: Channel | str) -> bool:
        return Channel(channel) in self.channels_enabled


class AiContext(BaseModel):
    """Structured assistant state kept on each conversation."""

    last_intent: str | None = None
    pending_handoff_reason: str | None = None
    draft_anchor_message_id: UUID | None = None
    draft_started_at: datetime | None = None
    last_confidence: float | None = None
    suggested_reply: str | None = None
    last_error: str | None = None


class Conversation(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    config_id: UUID
    tenant_id: UUID
    channel: Channel
    contact_id: str
    customer_name: str = ""
    customer_phone: str = ""
    customer_email: str = ""
    # Storefront customer linked by the web chat widget, when signed in.
    customer_id: str = ""
    status: ConversationStatus = ConversationStatus.OPEN
    priority: Priority = Priority.NORMAL
    assigned_to: str | None = None
    tags: list[str] = Field(default_factory=list)
    ai_handled: bool = False
    ai_escalated: bool = False
    ai_context: AiContext = Field(default_factory=AiContext)
    unread_count: int = Field(default=0, ge=0)
    last_message_at: datetime | None = None
    last_message_preview: str = ""
    automation_fired_at: dict[str, datetime] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def lock_key(self) -> tuple[str, str, str]:
        return (str(self.config_id), self.channel.value, self.contact_id)


class Message(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    conversation_id: UUID
    config_id: UUID
    tenant_id: UUID
    channel: Channel
    direction: Direction
    message_type: MessageType = MessageType.TEXT
    body: str = ""
    media_url: str = ""
    media_mime_type: str = ""
    media_caption: str = ""
    template_name: str = ""
    template_params: list[Any] = Field(default_factory=list)
    interactive_data: dict[str, Any] = Field(default_factory=dict)
    latitude: float | None = None
    longitude: float | None = None
    location_name: str = ""
    external_message_id: str = ""
    # Channel extras kept from the inbound payload (email subject, sender).
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: MessageStatus = MessageStatus.RECEIVED
    error_message: str = ""
    ai_generated: bool = False
    ai_confidence: float | None = None
    sequence: int = 0
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class RejectionRecord(BaseModel):
    status: ApprovalStatus
    reason: str | None = None
    at: datetime = Field(default_factory=_utcnow)


class Template(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    config_id: UUID
    tenant_id: UUID
    name: str
    category: str = "utility"
    language: str = "en"
    header_text: str = ""
    body_text: str
    footer_text: str = ""
    buttons: list[dict[str, Any]] = Field(default_factory=list)
    provider_template_id: str = ""
    approval_status: ApprovalStatus = ApprovalStatus.DRAFT
    rejection_reason: str | None = None
    rejection_history: list[RejectionRecord] = Field(default_factory=list)
    times_sent: int = Field(default=0, ge=0)
    last_sent_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class QuickReply(BaseModel):
    tenant_id: UUID
    shortcut: str = Field(min_length=1)
    title: str = ""
    body: str
    category: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# API payloads


class ConversationDetail(Conversation):
    messages: list[Message] = Field(default_factory=list)


class ConversationList(BaseModel):
    items: list[Conversation]
    total: int


class OutboundSendRequest(BaseModel):
    """Body of the outbound send endpoint.

    Fields are optional at the schema level so the endpoint can report every
    missing field at once with a 400 rather than FastAPI's default 422.
    """

    config_id: UUID | None = None
    conversation_id: UUID | None = None
    contact_id: str | None = None
    channel: Channel | None = None
    body: str | None = None
    quick_reply: str | None = None


class OutboundSendResponse(BaseModel):
    message: Message
    external_message_id: str
    attempts: int


class AssignRequest(BaseModel):
    agent: str | None = None


class StatusRequest(BaseModel):
    status: ConversationStatus


class PriorityRequest(BaseModel):
    priority: Priority


class IngestSummary(BaseModel):
    processed_messages: int
    duplicates: int
    receipts: int
    dropped: int = 0
    conversation_ids: list[UUID] = Field(default_factory=list)


class WidgetSettings(BaseModel):
    title: str
    greeting: str
    business_name: str


class WidgetMessage(BaseModel):
    """What the storefront widget renders; no provider ids or errors."""

    id: UUID
    direction: Direction
    message_type: MessageType
    body: str
    media_url: str = ""
    media_caption: str = ""
    ai_generated: bool = False
    status: MessageStatus
    created_at: datetime


class WidgetState(BaseModel):
    config: WidgetSettings
    conversation_id: UUID | None = None
    messages: list[WidgetMessage] = Field(default_factory=list)


class TemplateCreate(BaseModel):
    name: str = Field(min_length=1)
    category: str = "utility"
    language: str = "en"
    header_text: str = ""
    body_text: str = Field(min_length=1)
    footer_text: str = ""
    buttons: list[dict[str, Any]] = Field(default_factory=list)


class TemplateUpdate(BaseModel):
    name: str | None = None
    category: str | None = None
    language: str | None = None
    header_text: str | None = None
    body_text: str | None = None
    footer_text: str | None = None
    buttons: list[dict[str, Any]] | None = None


class ApprovalResult(BaseModel):
    status: ApprovalStatus
    reason: str | None = None
    provider_template_id: str | None = None


class QuickReplyUpsert(BaseModel):
    title: str = ""
    body: str = Field(min_length=1)
    category: str = ""


class TemplateSendRequest(BaseModel):
    template_id: UUID
    params: list[str] = Field(default_factory=list)
