"""Automation evaluation.

Two entry points:

- :meth:`AutomationEngine.handle_event` runs for every event emitted by the
  conversation router (new message, new conversation). Keyword rules ride on
  new-message events.
- :meth:`AutomationEngine.sweep` is called periodically and fires
  ``time_elapsed`` rules for open conversations that have been idle long
  enough.

Conditions are always evaluated against the snapshot carried by the event,
never against state changed by actions of the same pass, so an action can not
re-trigger rules within one evaluation. Each rule runs independently: a
failing action is reported in the :class:`EvaluationReport` and the remaining
rules still run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from ..conversations.models import EngineEvent, EventKind
from ..conversations.repository import MessagingRepository
from ..conversations.routing import ConversationRouter
from ..conversations.schemas import (
    Conversation,
    ConversationStatus,
    Direction,
    Message,
    MessagingConfig,
)
from ..core.locks import KeyedLock
from ..errors import AutomationActionFailure, TemplateNotApproved
from ..notifications import Notification, Notifier
from ..templates.service import TemplateManager
from .schemas import (
    AssignAction,
    Automation,
    Condition,
    ConditionOp,
    EscalateAction,
    EvaluationReport,
    KeywordTrigger,
    NotifyAction,
    RuleOutcome,
    SendTemplateAction,
    TagAction,
    TimeElapsedTrigger,
    TriggerType,
)

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"true", "1", "yes", "on"}


class TemplateSender(Protocol):
    """Sends an approved template into an existing conversation."""

    async def send_template(
        self,
        config: MessagingConfig,
        conversation_id: UUID,
        template_id: UUID,
        params: Sequence[str] = (),
    ) -> Message: ...


def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    return value


def condition_matches(
    condition: Condition, conversation: Conversation, message: Message | None
) -> bool:
    """Evaluate a single comparison against the event snapshot.

    List attributes (``tags``) treat ``eq``/``contains`` as membership and
    ``ne`` as absence. String ``contains`` is a case-insensitive substring
    test. A condition on ``message.*`` is false when the event has no message.
    """

    subject = conversation if condition.subject == "conversation" else message
    if subject is None:
        return False
    actual = _normalize(getattr(subject, condition.attribute, None))
    expected = _normalize(condition.value)

    if isinstance(actual, bool) and isinstance(expected, str):
        expected = expected.strip().lower() in _TRUE_STRINGS

    if isinstance(actual, (list, tuple, set)):
        present = expected in [_normalize(item) for item in actual]
        return not present if condition.op is ConditionOp.NE else present

    if condition.op is ConditionOp.CONTAINS:
        if actual is None or expected is None:
            return False
        return str(expected).lower() in str(actual).lower()
    if isinstance(actual, (int, float)) and isinstance(expected, str):
        try:
            expected = type(actual)(expected)
        except ValueError:
            return condition.op is ConditionOp.NE
    if condition.op is ConditionOp.NE:
        return actual != expected
    return actual == expected


def keyword_matches(trigger: KeywordTrigger, body: str | None) -> bool:
    return trigger.value.lower() in (body or "").lower()


class AutomationEngine:
    """Evaluates active automations and executes their actions."""

    def __init__(
        self,
        repository: MessagingRepository,
        router: ConversationRouter,
        locks: KeyedLock,
        templates: TemplateManager,
        notifier: Notifier,
        sender: TemplateSender,
    ) -> None:
        self._repository = repository
        self._router = router
        self._locks = locks
        self._templates = templates
        self._notifier = notifier
        self._sender = sender

    # ------------------------------------------------------------------
    # Rule selection

    def _active_rules(
        self, config_id: UUID, trigger_types: Iterable[TriggerType]
    ) -> list[Automation]:
        wanted = set(trigger_types)
        rules = [
            rule
            for rule in self._repository.list_automations(config_id)
            if rule.is_active and rule.trigger_type in wanted
        ]
        rules.sort(key=lambda rule: (rule.created_at, str(rule.id)))
        return rules

    @staticmethod
    def _event_trigger_types(event: EngineEvent) -> tuple[TriggerType, ...]:
        if event.kind is EventKind.NEW_CONVERSATION:
            return (TriggerType.NEW_CONVERSATION,)
        return (TriggerType.NEW_MESSAGE, TriggerType.KEYWORD)

    @staticmethod
    def rule_matches(rule: Automation, event: EngineEvent) -> bool:
        if not rule.is_active or not rule.applies_to(event.channel):
            return False
        if isinstance(rule.trigger, KeywordTrigger):
            message = event.message
            if message is None or message.direction is not Direction.INBOUND:
                return False
            if not keyword_matches(rule.trigger, message.body):
                return False
        return all(
            condition_matches(condition, event.conversation, event.message)
            for condition in rule.conditions
        )

    # ------------------------------------------------------------------
    # Event evaluation

    async def handle_events(
        self, config: MessagingConfig, events: Iterable[EngineEvent]
    ) -> EvaluationReport:
        report = EvaluationReport()
        for event in events:
            report.outcomes.extend((await self.handle_event(config, event)).outcomes)
        return report

    async def handle_event(
        self, config: MessagingConfig, event: EngineEvent
    ) -> EvaluationReport:
        report = EvaluationReport()
        # Rules toggled while this pass runs only affect the next event.
        rules = await asyncio.to_thread(
            self._active_rules, config.id, self._event_trigger_types(event)
        )
        for rule in rules:
            if not self.rule_matches(rule, event):
                continue
            report.outcomes.append(await self._fire(config, rule, event))
        return report

    async def _fire(
        self, config: MessagingConfig, rule: Automation, event: EngineEvent
    ) -> RuleOutcome:
        await asyncio.to_thread(self._record_firing, config.id, rule.id)
        outcome = RuleOutcome(automation_id=rule.id, fired=True, action=rule.action.type)
        try:
            outcome.detail = await self._execute(config, rule, event)
        except TemplateNotApproved as exc:
            logger.warning("Automation %s skipped send_template: %s", rule.id, exc)
            outcome.error = TemplateNotApproved.__name__
            outcome.detail = {"reason": str(exc)}
        except Exception as exc:
            failure = AutomationActionFailure(
                f"Automation {rule.id} action {rule.action.type} failed: {exc}"
            )
            logger.exception(str(failure))
            outcome.error = AutomationActionFailure.__name__
            outcome.detail = {"reason": str(exc)}
        return outcome

    def _record_firing(self, config_id: UUID, automation_id: UUID) -> None:
        # A single repository write; edits and toggles saved meanwhile keep
        # the counters.
        self._repository.record_automation_firing(
            config_id, automation_id, datetime.now(timezone.utc)
        )

    def _apply(
        self,
        config_id: UUID,
        conversation_id: UUID,
        change: Callable[[Conversation], Conversation],
    ) -> Conversation:
        return change(self._router.get_owned_conversation(config_id, conversation_id))

    # ------------------------------------------------------------------
    # Actions

    async def _execute(
        self, config: MessagingConfig, rule: Automation, event: EngineEvent
    ) -> dict[str, Any]:
        action = rule.action
        conversation_id = event.conversation.id
        key = event.conversation.lock_key

        if isinstance(action, AssignAction):
            async with self._locks.hold(key):
                await asyncio.to_thread(
                    self._apply,
                    config.id,
                    conversation_id,
                    lambda c: self._router.assign(c, action.agent),
                )
            return {"assigned_to": action.agent}

        if isinstance(action, TagAction):
            async with self._locks.hold(key):
                await asyncio.to_thread(
                    self._apply,
                    config.id,
                    conversation_id,
                    lambda c: self._router.add_tag(c, action.tag),
                )
            return {"tag": action.tag}

        if isinstance(action, EscalateAction):
            async with self._locks.hold(key):
                await asyncio.to_thread(
                    self._apply,
                    config.id,
                    conversation_id,
                    lambda c: self._router.escalate(c, action.reason, assign=True),
                )
            return {"reason": action.reason}

        if isinstance(action, SendTemplateAction):
            template = await asyncio.to_thread(
                self._templates.get_template, config.id, action.template_id
            )
            self._templates.ensure_approved(template)
            message = await self._sender.send_template(
                config, conversation_id, template.id, action.params
            )
            return {"message_id": str(message.id), "template": template.name}

        if isinstance(action, NotifyAction):
            recipients = action.recipients or list(config.notification_recipients)
            self._notifier.notify(
                Notification(
                    kind="automation",
                    tenant_id=config.tenant_id,
                    config_id=config.id,
                    recipients=recipients,
                    subject=f"Automation '{rule.name}' matched",
                    body=action.note or event.conversation.last_message_preview,
                    conversation_id=conversation_id,
                    metadata={"automation_id": str(rule.id)},
                )
            )
            return {"recipients": recipients}

        raise AutomationActionFailure(f"Unsupported action {action!r}")

    # ------------------------------------------------------------------
    # Time-elapsed sweep

    async def sweep(
        self, configs: Iterable[MessagingConfig], now: datetime | None = None
    ) -> EvaluationReport:
        """Fire ``time_elapsed`` rules for idle open conversations.

        A rule fires at most once per conversation per window: after firing,
        ``conversation.automation_fired_at`` keeps it quiet until another full
        ``seconds`` have passed, however often the sweep runs.
        """

        now = now or datetime.now(timezone.utc)
        report = EvaluationReport()
        for config in configs:
            rules = await asyncio.to_thread(
                self._active_rules, config.id, (TriggerType.TIME_ELAPSED,)
            )
            for rule in rules:
                if not isinstance(rule.trigger, TimeElapsedTrigger):
                    continue
                window = timedelta(seconds=rule.trigger.seconds)
                idle = await asyncio.to_thread(
                    self._repository.list_idle_conversations,
                    config.id,
                    older_than=now - window,
                )
                for candidate in idle:
                    outcome = await self._sweep_one(config, rule, candidate, window, now)
                    if outcome is not None:
                        report.outcomes.append(outcome)
        return report

    async def _sweep_one(
        self,
        config: MessagingConfig,
        rule: Automation,
        candidate: Conversation,
        window: timedelta,
        now: datetime,
    ) -> RuleOutcome | None:
        if not rule.applies_to(candidate.channel):
            return None
        async with self._locks.hold(candidate.lock_key):
            claimed = await asyncio.to_thread(
                self._claim_window, rule, candidate.id, window, now
            )
        if claimed is None:
            return None
        snapshot, latest = claimed

        event = EngineEvent(
            kind=EventKind.TIME_ELAPSED,
            config_id=config.id,
            channel=snapshot.channel,
            conversation=snapshot,
            message=latest,
        )
        logger.info(
            "Time-elapsed automation %s firing for conversation %s",
            rule.id,
            snapshot.id,
        )
        return await self._fire(config, rule, event)

    def _claim_window(
        self,
        rule: Automation,
        conversation_id: UUID,
        window: timedelta,
        now: datetime,
    ) -> tuple[Conversation, Message | None] | None:
        """Stamp the rule's window on a still-idle conversation.

        Returns the pre-stamp snapshot and latest message, or ``None`` when the
        conversation is no longer eligible. Caller holds the conversation lock.
        """

        gate_key = str(rule.id)
        conversation = self._repository.get_conversation(conversation_id)
        if (
            conversation is None
            or conversation.status is not ConversationStatus.OPEN
            or conversation.last_message_at is None
            or conversation.last_message_at > now - window
        ):
            return None
        fired_at = conversation.automation_fired_at.get(gate_key)
        if fired_at is not None and now - fired_at < window:
            return None
        snapshot = conversation.model_copy(deep=True)
        latest = self._repository.latest_message(conversation.id)
        if not all(
            condition_matches(condition, snapshot, latest)
            for condition in rule.conditions
        ):
            return None
        conversation.automation_fired_at[gate_key] = now
        self._repository.save_conversation(conversation)
        return snapshot, latest
