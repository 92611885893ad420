"""Messaging engine facade.

``MessagingEngine`` wires the channel adapters, the conversation router, the
automation engine and the AI responder together and owns the per-conversation
locks. HTTP routes and background jobs only ever talk to this class.

Inbound flow::

    adapter.normalize_inbound -> router.route_inbound (under lock)
        -> automations.handle_events -> responder.handle_new_message
        -> background draft task -> deliver

``ingest`` returns once messages are stored and automations have run; AI
drafts keep running in tracked tasks (see :meth:`MessagingEngine.drain`).
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from .assistant.generators import DraftGenerator, StaticDraftGenerator
from .assistant.responder import AIResponder
from .automations.engine import AutomationEngine
from .automations.schemas import EvaluationReport
from .automations.service import AutomationService
from .channels import get_adapter
from .channels.base import ChannelAdapter
from .channels.dispatch import Dispatcher
from .conversations.models import (
    DeliveryResult,
    EventKind,
    InboundMessage,
    OutboundMessage,
    RouteResult,
)
from .conversations.repository import MessagingRepository
from .conversations.routing import ConversationRouter
from .conversations.schemas import (
    Channel,
    Conversation,
    ConversationStatus,
    Message,
    MessageStatus,
    MessageType,
    MessagingConfig,
    Priority,
    Template,
)
from .core.locks import KeyedLock
from .core.settings import EngineSettings
from .errors import (
    AuthInvalid,
    ChannelDispatchFailure,
    ChannelNotEnabled,
    ConfigNotFound,
    ConversationNotFound,
    InvalidSignature,
    MalformedPayload,
)
from .notifications import Notification, Notifier, QueueNotifier
from .quick_replies import QuickReplyRegistry
from .templates.service import TemplateManager

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Channel, MessagingConfig], ChannelAdapter]


def _default_adapter_factory(channel: Channel, config: MessagingConfig) -> ChannelAdapter:
    return get_adapter(channel.value)(config)


@dataclass
class IngestResult:
    routes: list[RouteResult] = field(default_factory=list)
    receipts: int = 0
    dropped: int = 0
    reports: list[EvaluationReport] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(1 for route in self.routes if not route.duplicate)

    @property
    def duplicates(self) -> int:
        return sum(1 for route in self.routes if route.duplicate)

    @property
    def conversation_ids(self) -> list[UUID]:
        seen: dict[UUID, None] = {}
        for route in self.routes:
            seen.setdefault(route.conversation.id, None)
        return list(seen)


@dataclass
class SendResult:
    message: Message
    delivery: DeliveryResult


class MessagingEngine:
    def __init__(
        self,
        repository: MessagingRepository,
        *,
        settings: EngineSettings | None = None,
        generator: DraftGenerator | None = None,
        notifier: Notifier | None = None,
        dispatcher: Dispatcher | None = None,
        adapter_factory: AdapterFactory | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.repository = repository
        self.locks = KeyedLock()
        # QueueNotifier defines __len__, so an empty one is falsy.
        self.notifier = notifier if notifier is not None else QueueNotifier()
        if dispatcher is None:
            dispatcher = Dispatcher(
                max_attempts=self.settings.dispatch_max_attempts,
                backoff_seconds=self.settings.dispatch_backoff_seconds,
            )
        self.dispatcher = dispatcher
        self.router = ConversationRouter(
            repository, preview_length=self.settings.preview_length
        )
        self.templates = TemplateManager(repository)
        self.quick_replies = QuickReplyRegistry(repository)
        self.automations = AutomationService(repository)
        self.automation_engine = AutomationEngine(
            repository, self.router, self.locks, self.templates, self.notifier, self
        )
        self.responder = AIResponder(
            repository,
            self.router,
            self.locks,
            generator if generator is not None else StaticDraftGenerator(),
            self,
            self.notifier,
            settings=self.settings,
        )
        self._adapter_factory = adapter_factory or _default_adapter_factory
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Configs

    def get_config(self, config_id: UUID) -> MessagingConfig:
        config = self.repository.get_config(config_id)
        if config is None or not config.is_active:
            raise ConfigNotFound(f"Messaging config {config_id} not found")
        return config

    def create_config(self, config: MessagingConfig) -> MessagingConfig:
        logger.info("Onboarded messaging config %s for tenant %s", config.id, config.tenant_id)
        return self.repository.save_config(config)

    def update_config(self, config_id: UUID, changes: Mapping[str, Any]) -> MessagingConfig:
        config = self.get_config(config_id)
        immutable = {"id", "tenant_id", "created_at"} & set(changes)
        if immutable:
            raise ValueError(f"Fields cannot be changed: {', '.join(sorted(immutable))}")
        updated = MessagingConfig.model_validate(
            {**config.model_dump(), **changes, "updated_at": datetime.now(timezone.utc)}
        )
        return self.repository.save_config(updated)

    def deactivate_config(self, config_id: UUID) -> MessagingConfig:
        config = self.get_config(config_id)
        config.is_active = False
        config.updated_at = datetime.now(timezone.utc)
        logger.info("Deactivated messaging config %s", config_id)
        return self.repository.save_config(config)

    def adapter_for(self, config: MessagingConfig, channel: Channel | str) -> ChannelAdapter:
        channel = Channel(channel)
        if not config.channel_enabled(channel):
            raise ChannelNotEnabled(
                f"Channel {channel.value} is not enabled for config {config.id}"
            )
        return self._adapter_factory(channel, config)

    # ------------------------------------------------------------------
    # Inbound

    async def ingest(
        self,
        config_id: UUID,
        channel: Channel | str,
        payload: Mapping[str, Any],
        *,
        body: bytes = b"",
        headers: Mapping[str, str] | None = None,
    ) -> IngestResult:
        config = await asyncio.to_thread(self.get_config, config_id)
        adapter = self.adapter_for(config, channel)
        if not adapter.verify_signature(body, headers or {}):
            logger.warning(
                "Rejected %s webhook for config %s: bad signature",
                adapter.channel_name,
                config.id,
            )
            raise InvalidSignature("Invalid webhook signature")
        try:
            inbound = adapter.normalize_inbound(payload)
            receipts = adapter.parse_status_updates(payload)
        except MalformedPayload as exc:
            # Acknowledged so providers do not redeliver it.
            logger.warning(
                "Dropped malformed %s payload for config %s: %s",
                adapter.channel_name,
                config.id,
                exc,
            )
            return IngestResult(dropped=1)

        result = IngestResult()
        for item in inbound:
            route, report = await self.route_inbound(config, item)
            result.routes.append(route)
            if report is not None:
                result.reports.append(report)
        for receipt in receipts:
            applied = await asyncio.to_thread(
                self.router.apply_receipt,
                receipt.channel,
                receipt.external_message_id,
                receipt.status,
                error_message=receipt.error_message,
                at=receipt.at,
            )
            if applied is not None:
                result.receipts += 1
        return result

    async def route_inbound(
        self, config: MessagingConfig, inbound: InboundMessage
    ) -> tuple[RouteResult, EvaluationReport | None]:
        key = (str(config.id), inbound.channel.value, inbound.contact_id)
        async with self.locks.hold(key):
            route = await asyncio.to_thread(self.router.route_inbound, config, inbound)
        if route.duplicate:
            return route, None

        report = await self.automation_engine.handle_events(config, route.events)
        self._notify_inbound(config, route)
        for event in route.events:
            if event.kind is EventKind.NEW_MESSAGE:
                task = await self.responder.handle_new_message(config, event)
                if task is not None:
                    self._track(task)
        return route, report

    def _notify_inbound(self, config: MessagingConfig, route: RouteResult) -> None:
        if not config.notification_recipients:
            return
        conversation = route.conversation
        if route.created and config.notify_new_conversation:
            kind, subject = "new_conversation", f"New {conversation.channel.value} conversation"
        elif config.notify_new_message:
            sender = conversation.customer_name or conversation.contact_id
            kind, subject = "new_message", f"New message from {sender}"
        else:
            return
        self.notifier.notify(
            Notification(
                kind=kind,
                tenant_id=config.tenant_id,
                config_id=config.id,
                recipients=list(config.notification_recipients),
                subject=subject,
                body=conversation.last_message_preview,
                conversation_id=conversation.id,
            )
        )

    # ------------------------------------------------------------------
    # Outbound

    async def send(
        self,
        config_id: UUID,
        conversation_id: UUID,
        body: str | None = None,
        *,
        channel: Channel | str | None = None,
        contact_id: str | None = None,
        quick_reply: str | None = None,
    ) -> SendResult:
        """Send a human reply. The conversation must already exist."""

        config = await asyncio.to_thread(self.get_config, config_id)
        conversation = await asyncio.to_thread(
            self.router.get_owned_conversation, config.id, conversation_id
        )
        if contact_id is not None and contact_id != conversation.contact_id:
            raise ConversationNotFound(
                f"Conversation {conversation_id} does not belong to contact {contact_id}"
            )
        if channel is not None and Channel(channel) is not conversation.channel:
            raise ValueError(
                f"Conversation {conversation_id} is on {conversation.channel.value}"
            )
        if quick_reply:
            body = self.quick_replies.expand(config.tenant_id, quick_reply)
        if not body or not body.strip():
            raise ValueError("Message body is required")
        adapter = self.adapter_for(config, conversation.channel)

        async with self.locks.hold(conversation.lock_key):
            message = await asyncio.to_thread(
                self.router.route_outbound,
                config,
                conversation.id,
                body,
                status=MessageStatus.QUEUED,
            )
        delivery = await self.deliver(config, conversation, message, adapter=adapter)
        return SendResult(message=message, delivery=delivery)

    async def send_template(
        self,
        config: MessagingConfig,
        conversation_id: UUID,
        template_id: UUID,
        params: Sequence[str] = (),
    ) -> Message:
        conversation = await asyncio.to_thread(
            self.router.get_owned_conversation, config.id, conversation_id
        )
        adapter = self.adapter_for(config, conversation.channel)
        async with self.locks.hold(conversation.lock_key):
            template, message = await asyncio.to_thread(
                self._queue_template, config, conversation, template_id, params
            )
        await self.deliver(
            config,
            conversation,
            message,
            adapter=adapter,
            template_language=template.language,
        )
        await asyncio.to_thread(self.templates.record_sent, config.id, template.id)
        return message

    def _queue_template(
        self,
        config: MessagingConfig,
        conversation: Conversation,
        template_id: UUID,
        params: Sequence[str],
    ) -> tuple[Template, Message]:
        # Approval can be revoked after the send was scheduled.
        template = self.templates.get_template(config.id, template_id)
        self.templates.ensure_approved(template)
        message = self.router.route_outbound(
            config,
            conversation.id,
            self.templates.render(template, params),
            status=MessageStatus.QUEUED,
            message_type=MessageType.TEMPLATE,
            template_name=template.name,
            template_params=list(params),
        )
        return template, message

    async def deliver(
        self,
        config: MessagingConfig,
        conversation: Conversation,
        message: Message,
        *,
        adapter: ChannelAdapter | None = None,
        **overrides: Any,
    ) -> DeliveryResult:
        """Dispatch a stored outbound message and record the outcome.

        Failures leave the message with ``status=failed`` and its error text.
        Email replies reuse the subject of the customer's latest email.
        """

        adapter = adapter or self.adapter_for(config, conversation.channel)
        outbound = OutboundMessage.from_message(message, conversation.contact_id)
        if conversation.channel is Channel.EMAIL and "subject" not in overrides:
            overrides["subject"] = await asyncio.to_thread(
                self.router.reply_subject, conversation.id
            )
        if overrides:
            outbound = dataclasses.replace(outbound, **overrides)
        try:
            result = await self.dispatcher.dispatch(adapter, outbound)
        except ChannelDispatchFailure as exc:
            await asyncio.to_thread(self.router.complete_outbound, message, error=str(exc))
            if isinstance(exc.__cause__, AuthInvalid):
                await asyncio.to_thread(self._invalidate_credentials, config, exc)
            raise ChannelDispatchFailure(
                str(exc), transient=exc.transient, message_id=message.id
            ) from exc.__cause__
        await asyncio.to_thread(
            self.router.complete_outbound,
            message,
            external_message_id=result.external_message_id,
        )
        return result

    def _invalidate_credentials(self, config: MessagingConfig, exc: Exception) -> None:
        stored = self.repository.get_config(config.id)
        if stored is not None and stored.is_verified:
            stored.is_verified = False
            stored.updated_at = datetime.now(timezone.utc)
            self.repository.save_config(stored)
        logger.error("Credentials for config %s rejected by provider: %s", config.id, exc)
        self.notifier.notify(
            Notification(
                kind="channel_auth_invalid",
                tenant_id=config.tenant_id,
                config_id=config.id,
                recipients=list(config.notification_recipients),
                subject="Messaging channel credentials were rejected",
                body=str(exc),
            )
        )

    # ------------------------------------------------------------------
    # Agent actions

    def get_conversation(self, config_id: UUID, conversation_id: UUID) -> Conversation:
        config = self.get_config(config_id)
        return self.router.get_owned_conversation(config.id, conversation_id)

    def list_conversations(
        self,
        config_id: UUID,
        *,
        status: ConversationStatus | None = None,
        limit: int = 50,
    ) -> list[Conversation]:
        config = self.get_config(config_id)
        return self.repository.list_conversations(config.id, status=status, limit=limit)

    def list_messages(self, config_id: UUID, conversation_id: UUID) -> list[Message]:
        conversation = self.get_conversation(config_id, conversation_id)
        return self.repository.list_messages(conversation.id)

    def web_chat_session(
        self, config_id: UUID, session_id: str, *, limit: int = 100
    ) -> tuple[MessagingConfig, Conversation | None, list[Message]]:
        """Config and latest messages for one widget visitor session.

        A session that has not written yet has no conversation and no
        messages; the widget shows the greeting only.
        """

        config = self.get_config(config_id)
        if not config.channel_enabled(Channel.WEB_CHAT):
            raise ChannelNotEnabled(f"Web chat is not enabled for config {config.id}")
        conversation = self.repository.find_conversation(
            config.id, Channel.WEB_CHAT, session_id.strip()
        )
        if conversation is None:
            return config, None, []
        return config, conversation, self.repository.list_messages(conversation.id, limit=limit)

    async def _mutate(
        self,
        config_id: UUID,
        conversation_id: UUID,
        apply: Callable[[MessagingConfig, Conversation], Conversation],
    ) -> Conversation:
        config = await asyncio.to_thread(self.get_config, config_id)
        conversation = await asyncio.to_thread(
            self.router.get_owned_conversation, config.id, conversation_id
        )
        async with self.locks.hold(conversation.lock_key):
            return await asyncio.to_thread(self._reload_and_apply, config, conversation_id, apply)

    def _reload_and_apply(
        self,
        config: MessagingConfig,
        conversation_id: UUID,
        apply: Callable[[MessagingConfig, Conversation], Conversation],
    ) -> Conversation:
        conversation = self.router.get_owned_conversation(config.id, conversation_id)
        return apply(config, conversation)

    async def mark_read(self, config_id: UUID, conversation_id: UUID) -> Conversation:
        return await self._mutate(
            config_id, conversation_id, lambda _, c: self.router.mark_read(c)
        )

    async def assign(
        self, config_id: UUID, conversation_id: UUID, agent: str | None
    ) -> Conversation:
        return await self._mutate(
            config_id, conversation_id, lambda _, c: self.router.assign(c, agent)
        )

    async def set_status(
        self, config_id: UUID, conversation_id: UUID, status: ConversationStatus
    ) -> Conversation:
        return await self._mutate(
            config_id, conversation_id, lambda _, c: self.router.set_status(c, status)
        )

    async def set_priority(
        self, config_id: UUID, conversation_id: UUID, priority: Priority
    ) -> Conversation:
        return await self._mutate(
            config_id, conversation_id, lambda _, c: self.router.set_priority(c, priority)
        )

    async def escalate(
        self, config_id: UUID, conversation_id: UUID, reason: str = "agent"
    ) -> Conversation:
        return await self._mutate(
            config_id, conversation_id, lambda _, c: self.router.escalate(c, reason)
        )

    async def release_escalation(
        self, config_id: UUID, conversation_id: UUID
    ) -> Conversation:
        return await self._mutate(config_id, conversation_id, self.router.release_escalation)

    # ------------------------------------------------------------------
    # Background work

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    async def drain(self) -> None:
        """Wait for outstanding AI drafts."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def sweep(self, now: datetime | None = None) -> EvaluationReport:
        configs = await asyncio.to_thread(self.repository.list_configs)
        return await self.automation_engine.sweep(configs, now)

    async def run_sweeper(self, interval: float | None = None) -> None:
        """Run :meth:`sweep` forever; cancelled on shutdown."""

        interval = interval or self.settings.sweep_interval_seconds
        while True:
            try:
                report = await self.sweep()
                if report.outcomes:
                    logger.info("Automation sweep fired %s rule(s)", len(report.fired))
            except Exception:
                logger.exception("Automation sweep failed")
            await asyncio.sleep(interval)
