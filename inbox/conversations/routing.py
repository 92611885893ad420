"""Conversation routing: resolve threads, append messages, keep counters.

Every method here assumes the caller holds the per-conversation lock (see
:mod:`inbox.core.locks`); the router itself is synchronous and only talks to
the repository.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from ..errors import ConversationNotFound, DuplicateMessage
from .models import EngineEvent, EventKind, InboundMessage, RouteResult
from .repository import MessagingRepository
from .schemas import (
    Channel,
    Conversation,
    ConversationStatus,
    Direction,
    Message,
    MessageStatus,
    MessagingConfig,
    Priority,
)

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100
ELLIPSIS = "..."

# Receipts never move a message backwards through these states.
_STATUS_RANK = {
    MessageStatus.QUEUED: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


def make_preview(body: str, length: int = PREVIEW_LENGTH) -> str:
    body = body.strip()
    if len(body) > length:
        return body[:length] + ELLIPSIS
    return body


def _customer_id(inbound: InboundMessage) -> str:
    return str(inbound.metadata.get("customer_id") or "").strip()


class ConversationRouter:
    """Applies conversation state transitions for inbound and outbound traffic."""

    def __init__(
        self,
        repository: MessagingRepository,
        *,
        preview_length: int = PREVIEW_LENGTH,
    ) -> None:
        self._repository = repository
        self._preview_length = preview_length

    # ------------------------------------------------------------------
    # Inbound

    def route_inbound(self, config: MessagingConfig, inbound: InboundMessage) -> RouteResult:
        existing = self._repository.find_message_by_external(
            inbound.channel, inbound.external_message_id
        )
        if existing is not None:
            conversation = self._repository.get_conversation(existing.conversation_id)
            logger.info(
                "Duplicate %s message %s ignored",
                inbound.channel.value,
                inbound.external_message_id,
            )
            if conversation is None:
                raise ConversationNotFound(
                    f"Conversation {existing.conversation_id} not found"
                )
            return RouteResult(conversation=conversation, message=existing, duplicate=True)

        conversation = self._repository.find_conversation(
            config.id, inbound.channel, inbound.contact_id
        )
        created = False
        if conversation is None:
            conversation = Conversation(
                config_id=config.id,
                tenant_id=config.tenant_id,
                channel=inbound.channel,
                contact_id=inbound.contact_id,
                customer_name=inbound.customer_name,
                customer_phone=inbound.customer_phone,
                customer_email=inbound.customer_email,
                customer_id=_customer_id(inbound),
                status=ConversationStatus.OPEN,
                unread_count=0,
                ai_handled=config.ai_enabled,
            )
            self._repository.create_conversation(conversation)
            created = True
            logger.info(
                "Created %s conversation %s for contact %s",
                inbound.channel.value,
                conversation.id,
                inbound.contact_id,
            )

        message = Message(
            conversation_id=conversation.id,
            config_id=config.id,
            tenant_id=config.tenant_id,
            channel=inbound.channel,
            direction=Direction.INBOUND,
            message_type=inbound.message_type,
            body=inbound.body,
            media_url=inbound.media_url,
            media_mime_type=inbound.media_mime_type,
            media_caption=inbound.media_caption,
            interactive_data=inbound.interactive_data,
            latitude=inbound.latitude,
            longitude=inbound.longitude,
            location_name=inbound.location_name,
            external_message_id=inbound.external_message_id,
            metadata=dict(inbound.metadata),
            status=MessageStatus.RECEIVED,
            sent_at=inbound.sent_at,
        )
        try:
            self._repository.add_message(message)
        except DuplicateMessage:
            # Lost a race with another delivery of the same message.
            stored = self._repository.find_message_by_external(
                inbound.channel, inbound.external_message_id
            )
            refreshed = self._repository.get_conversation(conversation.id) or conversation
            return RouteResult(conversation=refreshed, message=stored, duplicate=True)

        now = message.created_at
        conversation.unread_count += 1
        conversation.last_message_at = now
        conversation.last_message_preview = make_preview(inbound.body, self._preview_length)
        conversation.updated_at = now
        if inbound.customer_name:
            conversation.customer_name = inbound.customer_name
        if inbound.customer_email:
            conversation.customer_email = inbound.customer_email
        if inbound.customer_phone:
            conversation.customer_phone = inbound.customer_phone
        customer_id = _customer_id(inbound)
        if customer_id:
            conversation.customer_id = customer_id
        # A customer writing again reopens a resolved thread; spam stays spam.
        if conversation.status is ConversationStatus.RESOLVED:
            conversation.status = ConversationStatus.OPEN
        self._repository.save_conversation(conversation)

        events = [
            EngineEvent(
                kind=EventKind.NEW_MESSAGE,
                config_id=config.id,
                channel=inbound.channel,
                conversation=conversation.model_copy(deep=True),
                message=message.model_copy(deep=True),
            )
        ]
        if created:
            events.append(
                EngineEvent(
                    kind=EventKind.NEW_CONVERSATION,
                    config_id=config.id,
                    channel=inbound.channel,
                    conversation=conversation.model_copy(deep=True),
                    message=message.model_copy(deep=True),
                )
            )
        return RouteResult(
            conversation=conversation, message=message, created=created, events=events
        )

    # ------------------------------------------------------------------
    # Outbound

    def get_owned_conversation(self, config_id: UUID, conversation_id: UUID) -> Conversation:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None or conversation.config_id != config_id:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return conversation

    def route_outbound(
        self,
        config: MessagingConfig,
        conversation_id: UUID,
        body: str,
        channel: Channel | None = None,
        *,
        status: MessageStatus = MessageStatus.SENT,
        **fields: Any,
    ) -> Message:
        """Append an outbound message to an existing conversation.

        ``channel`` defaults to the conversation's channel; a conversation's
        channel is fixed, so a mismatch is rejected.
        """

        conversation = self.get_owned_conversation(config.id, conversation_id)
        if channel is not None and Channel(channel) is not conversation.channel:
            raise ValueError(
                f"Conversation {conversation_id} is on {conversation.channel.value}, not {Channel(channel).value}"
            )
        now = datetime.now(timezone.utc)
        message = Message(
            conversation_id=conversation.id,
            config_id=config.id,
            tenant_id=config.tenant_id,
            channel=conversation.channel,
            direction=Direction.OUTBOUND,
            body=body.strip(),
            status=status,
            sent_at=now if status is MessageStatus.SENT else None,
            created_at=now,
            **fields,
        )
        self._repository.add_message(message)

        conversation.unread_count = 0
        conversation.last_message_at = now
        conversation.last_message_preview = make_preview(message.body, self._preview_length)
        conversation.updated_at = now
        self._repository.save_conversation(conversation)
        return message

    def complete_outbound(
        self,
        message: Message,
        *,
        external_message_id: str = "",
        error: str | None = None,
    ) -> Message:
        """Record the dispatch outcome of a stored outbound message."""

        if error is not None:
            message.status = MessageStatus.FAILED
            message.error_message = error
        else:
            message.status = MessageStatus.SENT
            message.sent_at = message.sent_at or datetime.now(timezone.utc)
            message.error_message = ""
            if external_message_id:
                message.external_message_id = external_message_id
        return self._repository.save_message(message)

    def reply_subject(self, conversation_id: UUID) -> str:
        """``Re:`` the subject of the customer's latest email, if any."""

        for message in reversed(self._repository.list_messages(conversation_id)):
            if message.direction is not Direction.INBOUND:
                continue
            subject = str(message.metadata.get("subject") or "").strip()
            if subject:
                return subject if subject.lower().startswith("re:") else f"Re: {subject}"
        return ""

    # ------------------------------------------------------------------
    # Receipts and agent actions

    def apply_receipt(
        self,
        channel: Channel,
        external_message_id: str,
        status: MessageStatus,
        *,
        error_message: str = "",
        at: datetime | None = None,
    ) -> Message | None:
        message = self._repository.find_message_by_external(channel, external_message_id)
        if message is None:
            logger.debug("Receipt for unknown %s message %s", channel.value, external_message_id)
            return None
        at = at or datetime.now(timezone.utc)
        if status is MessageStatus.FAILED:
            message.status = MessageStatus.FAILED
            message.error_message = error_message or "Delivery failed"
        elif _STATUS_RANK.get(status, 0) >= _STATUS_RANK.get(message.status, 0):
            message.status = status
        if status is MessageStatus.SENT:
            message.sent_at = message.sent_at or at
        elif status is MessageStatus.DELIVERED:
            message.delivered_at = message.delivered_at or at
        elif status is MessageStatus.READ:
            message.delivered_at = message.delivered_at or at
            message.read_at = message.read_at or at
        return self._repository.save_message(message)

    def mark_read(self, conversation: Conversation) -> Conversation:
        conversation.unread_count = 0
        conversation.updated_at = datetime.now(timezone.utc)
        return self._repository.save_conversation(conversation)

    def assign(self, conversation: Conversation, agent: str | None) -> Conversation:
        conversation.assigned_to = agent or None
        if agent and conversation.status is ConversationStatus.OPEN:
            conversation.status = ConversationStatus.ASSIGNED
        elif not agent and conversation.status is ConversationStatus.ASSIGNED:
            conversation.status = ConversationStatus.OPEN
        conversation.updated_at = datetime.now(timezone.utc)
        return self._repository.save_conversation(conversation)

    def set_status(
        self, conversation: Conversation, status: ConversationStatus
    ) -> Conversation:
        conversation.status = status
        conversation.updated_at = datetime.now(timezone.utc)
        return self._repository.save_conversation(conversation)

    def add_tag(self, conversation: Conversation, tag: str) -> Conversation:
        if tag in conversation.tags:
            return conversation
        conversation.tags.append(tag)
        conversation.updated_at = datetime.now(timezone.utc)
        return self._repository.save_conversation(conversation)

    def set_priority(self, conversation: Conversation, priority: Priority) -> Conversation:
        conversation.priority = priority
        conversation.updated_at = datetime.now(timezone.utc)
        return self._repository.save_conversation(conversation)

    def escalate(
        self, conversation: Conversation, reason: str, *, assign: bool = False
    ) -> Conversation:
        """Hand the conversation to humans and stop AI auto-replies."""

        conversation.ai_escalated = True
        conversation.ai_handled = False
        conversation.ai_context.pending_handoff_reason = reason
        conversation.ai_context.draft_anchor_message_id = None
        # Only open threads move to the human queue; resolved and spam stay put.
        if assign and conversation.status is ConversationStatus.OPEN:
            conversation.status = ConversationStatus.ASSIGNED
        conversation.updated_at = datetime.now(timezone.utc)
        return self._repository.save_conversation(conversation)

    def release_escalation(
        self, config: MessagingConfig, conversation: Conversation
    ) -> Conversation:
        """Explicit human action returning the conversation to the assistant."""

        conversation.ai_escalated = False
        conversation.ai_handled = config.ai_enabled
        conversation.ai_context.pending_handoff_reason = None
        conversation.ai_context.suggested_reply = None
        conversation.updated_at = datetime.now(timezone.utc)
        return self._repository.save_conversation(conversation)
