"""AI responder: draft, gate and send assistant replies.

The responder runs after automations for every inbound message of a config
with ``ai_enabled``. Escalation keywords hand the conversation to a human
straight away; otherwise a draft is produced in a background task and sent
only if, at the moment of sending, the inbound message it answers is still
the newest message of the conversation. A human reply (or another customer
message) appended in the meantime always wins and the draft is discarded.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID

from langdetect import LangDetectException, detect

from ..conversations.models import DeliveryResult, EngineEvent
from ..conversations.repository import MessagingRepository
from ..conversations.routing import ConversationRouter
from ..conversations.schemas import (
    Conversation,
    ConversationStatus,
    Direction,
    Message,
    MessageStatus,
    MessageType,
    MessagingConfig,
)
from ..core.locks import KeyedLock
from ..core.settings import EngineSettings
from ..errors import AIDraftTimeout, AIQuotaExceeded, ChannelDispatchFailure
from ..notifications import Notification, Notifier
from .generators import Draft, DraftGenerator, DraftRequest
from .prompts import ReplyPromptBuilder

logger = logging.getLogger(__name__)


class ReplyDeliverer(Protocol):
    async def deliver(
        self, config: MessagingConfig, conversation: Conversation, message: Message
    ) -> DeliveryResult: ...


class AIResponder:
    def __init__(
        self,
        repository: MessagingRepository,
        router: ConversationRouter,
        locks: KeyedLock,
        generator: DraftGenerator,
        deliverer: ReplyDeliverer,
        notifier: Notifier,
        *,
        settings: EngineSettings | None = None,
        prompts: ReplyPromptBuilder | None = None,
    ) -> None:
        settings = settings or EngineSettings()
        self._repository = repository
        self._router = router
        self._locks = locks
        self._generator = generator
        self._deliverer = deliverer
        self._notifier = notifier
        self._prompts = prompts or ReplyPromptBuilder()
        self.timeout_seconds = settings.ai_draft_timeout_seconds
        self.history_limit = settings.ai_history_limit
        self.language = settings.openai_lang

    # ------------------------------------------------------------------
    # Decisions

    @staticmethod
    def should_escalate(config: MessagingConfig, body: str | None) -> str | None:
        """Return the first escalation keyword found in ``body``, if any."""

        text = (body or "").lower()
        for keyword in config.ai_escalation_keywords:
            candidate = keyword.strip().lower()
            if candidate and candidate in text:
                return keyword
        return None

    @staticmethod
    def is_active(config: MessagingConfig, conversation: Conversation) -> bool:
        return (
            config.ai_enabled
            and not conversation.ai_escalated
            and conversation.status is not ConversationStatus.SPAM
        )

    def _detect_language(self, text: str) -> str | None:
        if self.language:
            return self.language
        try:
            return detect(text)
        except LangDetectException:
            return None

    @staticmethod
    def _is_current(
        conversation: Conversation, anchor_id: UUID, latest: Message | None
    ) -> bool:
        return (
            not conversation.ai_escalated
            and conversation.status is not ConversationStatus.SPAM
            and conversation.ai_context.draft_anchor_message_id == anchor_id
            and latest is not None
            and latest.id == anchor_id
        )

    # ------------------------------------------------------------------
    # Entry point

    async def handle_new_message(
        self, config: MessagingConfig, event: EngineEvent
    ) -> asyncio.Task | None:
        """Escalate or schedule a draft for an inbound message.

        Returns the background drafting task, or ``None`` when the assistant
        stays out of the conversation. Only text messages with a body are
        answered; media, locations and button replies wait for a human.
        """

        message = event.message
        if message is None or message.direction is not Direction.INBOUND:
            return None
        if not config.ai_enabled:
            return None
        if message.message_type is not MessageType.TEXT or not message.body.strip():
            logger.debug(
                "No AI draft for %s message %s", message.message_type.value, message.id
            )
            return None

        async with self._locks.hold(event.conversation.lock_key):
            conversation_id = await asyncio.to_thread(
                self._claim_draft, config, event.conversation.id, message
            )
        if conversation_id is None:
            return None
        return asyncio.create_task(
            self.draft_and_send(config, conversation_id, message.id),
            name=f"ai-draft-{conversation_id}",
        )

    def _claim_draft(
        self, config: MessagingConfig, conversation_id: UUID, message: Message
    ) -> UUID | None:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None or not self.is_active(config, conversation):
            return None
        keyword = self.should_escalate(config, message.body)
        if keyword:
            conversation.ai_context.last_intent = "handoff"
            self._router.escalate(conversation, f"keyword:{keyword}")
            logger.info(
                "Conversation %s escalated to a human (keyword %r)",
                conversation.id,
                keyword,
            )
            return None
        conversation.ai_context.draft_anchor_message_id = message.id
        conversation.ai_context.draft_started_at = datetime.now(timezone.utc)
        self._repository.save_conversation(conversation)
        return conversation.id

    # ------------------------------------------------------------------
    # Background drafting

    async def draft_and_send(
        self, config: MessagingConfig, conversation_id: UUID, anchor_id: UUID
    ) -> Message | None:
        try:
            return await self._draft_and_send(config, conversation_id, anchor_id)
        except AIDraftTimeout as exc:
            # Normal fallback: the conversation simply waits for a human.
            logger.info("AI draft for conversation %s abandoned: %s", conversation_id, exc)
            await self._release_draft(conversation_id, anchor_id, handoff="draft_timeout")
            return None
        except AIQuotaExceeded as exc:
            logger.error("AI quota exhausted for config %s: %s", config.id, exc)
            await self._release_draft(
                conversation_id, anchor_id, handoff="ai_quota_exceeded", error=str(exc)
            )
            self._notifier.notify(
                Notification(
                    kind="ai_quota_exceeded",
                    tenant_id=config.tenant_id,
                    config_id=config.id,
                    recipients=list(config.notification_recipients),
                    subject="AI replies paused: quota exhausted",
                    body=str(exc),
                    conversation_id=conversation_id,
                )
            )
            return None

    async def _draft_and_send(
        self, config: MessagingConfig, conversation_id: UUID, anchor_id: UUID
    ) -> Message | None:
        if config.ai_auto_reply_delay_ms:
            await asyncio.sleep(config.ai_auto_reply_delay_ms / 1000)

        conversation = await asyncio.to_thread(self._repository.get_conversation, conversation_id)
        history = await asyncio.to_thread(
            self._repository.list_messages, conversation_id, self.history_limit
        )
        latest = history[-1] if history else None
        if (
            conversation is None
            or latest is None
            or not self._is_current(conversation, anchor_id, latest)
        ):
            logger.debug("Skipping AI draft for conversation %s: superseded", conversation_id)
            return None

        request = DraftRequest(
            config=config,
            conversation=conversation,
            message=latest,
            history=history,
            system_prompt=self._prompts.build(
                config, conversation.channel, self._detect_language(latest.body)
            ),
        )
        try:
            draft = await asyncio.wait_for(
                self._generator.draft(request), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise AIDraftTimeout(
                f"Draft exceeded {self.timeout_seconds:.1f}s budget"
            ) from exc

        if not draft.text:
            await self._release_draft(conversation_id, anchor_id, handoff="empty_draft")
            return None

        async with self._locks.hold(conversation.lock_key):
            committed = await asyncio.to_thread(
                self._commit_draft, config, conversation_id, anchor_id, draft
            )
        if committed is None:
            return None
        conversation, reply = committed

        try:
            await self._deliverer.deliver(config, conversation, reply)
        except ChannelDispatchFailure as exc:
            # The reply stays stored as failed; agents can retry it.
            logger.warning("AI reply %s for conversation %s failed: %s", reply.id, conversation_id, exc)
        return reply

    def _commit_draft(
        self,
        config: MessagingConfig,
        conversation_id: UUID,
        anchor_id: UUID,
        draft: Draft,
    ) -> tuple[Conversation, Message] | None:
        """Store the reply if the anchor is still the newest message."""

        conversation = self._repository.get_conversation(conversation_id)
        latest = self._repository.latest_message(conversation_id)
        if conversation is None or not self._is_current(conversation, anchor_id, latest):
            logger.info(
                "Discarding AI draft for conversation %s: newer activity", conversation_id
            )
            return None
        context = conversation.ai_context
        context.last_confidence = draft.confidence
        context.last_intent = draft.intent
        context.draft_anchor_message_id = None
        context.draft_started_at = None
        context.last_error = None
        if (
            config.ai_min_confidence
            and draft.confidence is not None
            and draft.confidence < config.ai_min_confidence
        ):
            context.suggested_reply = draft.text
            self._router.escalate(conversation, "low_confidence")
            logger.info(
                "AI draft for conversation %s below confidence %.2f (%.2f), escalated",
                conversation_id,
                config.ai_min_confidence,
                draft.confidence,
            )
            return None
        conversation.ai_handled = True
        self._repository.save_conversation(conversation)
        reply = self._router.route_outbound(
            config,
            conversation_id,
            draft.text,
            status=MessageStatus.QUEUED,
            ai_generated=True,
            ai_confidence=draft.confidence,
        )
        return conversation, reply

    async def _release_draft(
        self,
        conversation_id: UUID,
        anchor_id: UUID,
        *,
        handoff: str,
        error: str | None = None,
    ) -> None:
        conversation = await asyncio.to_thread(self._repository.get_conversation, conversation_id)
        if conversation is None:
            return
        async with self._locks.hold(conversation.lock_key):
            await asyncio.to_thread(
                self._clear_anchor, conversation_id, anchor_id, handoff, error
            )

    def _clear_anchor(
        self, conversation_id: UUID, anchor_id: UUID, handoff: str, error: str | None
    ) -> None:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None or conversation.ai_context.draft_anchor_message_id != anchor_id:
            return
        conversation.ai_context.draft_anchor_message_id = None
        conversation.ai_context.draft_started_at = None
        conversation.ai_context.pending_handoff_reason = handoff
        if error is not None:
            conversation.ai_context.last_error = error
        conversation.updated_at = datetime.now(timezone.utc)
        self._repository.save_conversation(conversation)
