"""Automation rules as a closed set of tagged variants.

Triggers, conditions and actions are validated when a rule is saved, so the
evaluation path never has to interpret free-form blobs.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from ..conversations.schemas import Channel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerType(str, Enum):
    NEW_MESSAGE = "new_message"
    NEW_CONVERSATION = "new_conversation"
    KEYWORD = "keyword"
    TIME_ELAPSED = "time_elapsed"


class NewMessageTrigger(BaseModel):
    type: Literal["new_message"] = "new_message"


class NewConversationTrigger(BaseModel):
    type: Literal["new_conversation"] = "new_conversation"


class KeywordTrigger(BaseModel):
    type: Literal["keyword"] = "keyword"
    value: str = Field(min_length=1)

    @field_validator("value")
    @classmethod
    def _strip(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("keyword must not be blank")
        return stripped


class TimeElapsedTrigger(BaseModel):
    type: Literal["time_elapsed"] = "time_elapsed"
    seconds: int = Field(gt=0)


Trigger = Annotated[
    Union[NewMessageTrigger, NewConversationTrigger, KeywordTrigger, TimeElapsedTrigger],
    Field(discriminator="type"),
]


# Attributes a condition may compare against, per subject.
CONVERSATION_FIELDS = frozenset(
    {
        "status",
        "priority",
        "assigned_to",
        "tags",
        "channel",
        "contact_id",
        "customer_name",
        "customer_email",
        "customer_phone",
        "ai_handled",
        "ai_escalated",
        "unread_count",
    }
)
MESSAGE_FIELDS = frozenset(
    {"body", "message_type", "direction", "channel", "ai_generated"}
)


class ConditionOp(str, Enum):
    EQ = "eq"
    NE = "ne"
    CONTAINS = "contains"


class Condition(BaseModel):
    field: str
    op: ConditionOp = ConditionOp.EQ
    value: str | int | float | bool | None = None

    @field_validator("field")
    @classmethod
    def _known_path(cls, value: str) -> str:
        subject, _, attribute = value.partition(".")
        allowed = {"conversation": CONVERSATION_FIELDS, "message": MESSAGE_FIELDS}
        if subject not in allowed or attribute not in allowed[subject]:
            raise ValueError(f"Unknown condition field '{value}'")
        return value

    @property
    def subject(self) -> str:
        return self.field.split(".", 1)[0]

    @property
    def attribute(self) -> str:
        return self.field.split(".", 1)[1]


class AssignAction(BaseModel):
    type: Literal["assign"] = "assign"
    agent: str = Field(min_length=1)


class TagAction(BaseModel):
    type: Literal["tag"] = "tag"
    tag: str = Field(min_length=1)


class SendTemplateAction(BaseModel):
    type: Literal["send_template"] = "send_template"
    template_id: UUID
    params: list[str] = Field(default_factory=list)


class NotifyAction(BaseModel):
    type: Literal["notify"] = "notify"
    recipients: list[str] = Field(default_factory=list)
    note: str = ""


class EscalateAction(BaseModel):
    type: Literal["escalate"] = "escalate"
    reason: str = "automation"


Action = Annotated[
    Union[AssignAction, TagAction, SendTemplateAction, NotifyAction, EscalateAction],
    Field(discriminator="type"),
]


class Automation(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    config_id: UUID
    tenant_id: UUID
    name: str
    description: str = ""
    trigger: Trigger
    conditions: list[Condition] = Field(default_factory=list)
    action: Action
    channels: list[Channel] = Field(default_factory=list)
    is_active: bool = True
    times_triggered: int = Field(default=0, ge=0)
    last_triggered_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType(self.trigger.type)

    def applies_to(self, channel: Channel) -> bool:
        """An empty channel list means every channel."""
        return not self.channels or channel in self.channels


class AutomationCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    trigger: Trigger
    conditions: list[Condition] = Field(default_factory=list)
    action: Action
    channels: list[Channel] = Field(default_factory=list)
    is_active: bool = True


class AutomationUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    trigger: Trigger | None = None
    conditions: list[Condition] | None = None
    action: Action | None = None
    channels: list[Channel] | None = None
    is_active: bool | None = None


class RuleOutcome(BaseModel):
    automation_id: UUID
    fired: bool
    action: str | None = None
    error: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


class EvaluationReport(BaseModel):
    outcomes: list[RuleOutcome] = Field(default_factory=list)

    @property
    def fired(self) -> list[RuleOutcome]:
        return [outcome for outcome in self.outcomes if outcome.fired]
