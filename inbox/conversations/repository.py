"""Repositories for messaging state.

``MessagingRepository`` is the narrow interface the engine consumes. Two
implementations ship with the package: an in-memory store used by default and
in tests, and a PostgreSQL store mirroring the layout created by
``inbox/migrations/001_create_messaging_tables.py``.
"""
from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from functools import partial
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol, Tuple
from uuid import UUID

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..automations.schemas import Automation
from ..errors import DuplicateMessage
from .schemas import (
    Channel,
    Conversation,
    ConversationStatus,
    Message,
    MessagingConfig,
    QuickReply,
    Template,
)


class MessagingRepository(Protocol):
    """Abstraction for persisting messaging artefacts."""

    # Configs
    def get_config(self, config_id: UUID) -> Optional[MessagingConfig]: ...

    def save_config(self, config: MessagingConfig) -> MessagingConfig: ...

    def find_config_by_verify_token(self, token: str) -> Optional[MessagingConfig]: ...

    def list_configs(self, *, active_only: bool = True) -> List[MessagingConfig]: ...

    # Conversations
    def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]: ...

    def find_conversation(
        self, config_id: UUID, channel: Channel, contact_id: str
    ) -> Optional[Conversation]: ...

    def create_conversation(self, conversation: Conversation) -> Conversation: ...

    def save_conversation(self, conversation: Conversation) -> Conversation: ...

    def list_conversations(
        self,
        config_id: UUID,
        *,
        status: Optional[ConversationStatus] = None,
        limit: int = 50,
    ) -> List[Conversation]: ...

    def list_idle_conversations(
        self, config_id: UUID, *, older_than: datetime
    ) -> List[Conversation]: ...

    # Messages
    def find_message_by_external(
        self, channel: Channel, external_message_id: str
    ) -> Optional[Message]: ...

    def add_message(self, message: Message) -> Message: ...

    def save_message(self, message: Message) -> Message: ...

    def list_messages(
        self, conversation_id: UUID, limit: Optional[int] = None
    ) -> List[Message]: ...

    def latest_message(self, conversation_id: UUID) -> Optional[Message]: ...

    # Templates
    def get_template(self, config_id: UUID, template_id: UUID) -> Optional[Template]: ...

    def find_template(self, template_id: UUID) -> Optional[Template]: ...

    def save_template(self, template: Template) -> Template: ...

    def delete_template(self, config_id: UUID, template_id: UUID) -> bool: ...

    def list_templates(self, config_id: UUID) -> List[Template]: ...

    # Quick replies
    def get_quick_reply(self, tenant_id: UUID, shortcut: str) -> Optional[QuickReply]: ...

    def save_quick_reply(self, reply: QuickReply) -> QuickReply: ...

    def delete_quick_reply(self, tenant_id: UUID, shortcut: str) -> bool: ...

    def list_quick_replies(self, tenant_id: UUID) -> List[QuickReply]: ...

    # Automations
    def get_automation(self, config_id: UUID, automation_id: UUID) -> Optional[Automation]: ...

    def save_automation(self, automation: Automation) -> Automation: ...

    def record_automation_firing(
        self, config_id: UUID, automation_id: UUID, at: datetime
    ) -> Optional[Automation]: ...

    def delete_automation(self, config_id: UUID, automation_id: UUID) -> bool: ...

    def list_automations(self, config_id: UUID) -> List[Automation]: ...


class InMemoryMessagingRepository(MessagingRepository):
    """Process-local store. Returns copies so callers never share state.

    Every read and write holds ``self._lock``: threadpool routes read while
    the event loop (or worker threads) write.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._configs: Dict[UUID, MessagingConfig] = {}
        self._conversations: Dict[UUID, Conversation] = {}
        self._conversation_keys: Dict[Tuple[UUID, Channel, str], UUID] = {}
        self._messages: Dict[UUID, List[Message]] = {}
        self._external_ids: Dict[Tuple[Channel, str], UUID] = {}
        self._templates: Dict[UUID, Template] = {}
        self._quick_replies: Dict[Tuple[UUID, str], QuickReply] = {}
        self._automations: Dict[UUID, Automation] = {}

    # Configs -----------------------------------------------------------------
    def get_config(self, config_id: UUID) -> Optional[MessagingConfig]:
        with self._lock:
            config = self._configs.get(config_id)
            return config.model_copy(deep=True) if config else None

    def save_config(self, config: MessagingConfig) -> MessagingConfig:
        with self._lock:
            self._configs[config.id] = config.model_copy(deep=True)
        return config

    def find_config_by_verify_token(self, token: str) -> Optional[MessagingConfig]:
        with self._lock:
            for config in self._configs.values():
                if config.wa_verify_token and config.wa_verify_token == token:
                    return config.model_copy(deep=True)
        return None

    def list_configs(self, *, active_only: bool = True) -> List[MessagingConfig]:
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._configs.values()
                if c.is_active or not active_only
            ]

    # Conversations -----------------------------------------------------------
    def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy(deep=True) if conversation else None

    def find_conversation(
        self, config_id: UUID, channel: Channel, contact_id: str
    ) -> Optional[Conversation]:
        with self._lock:
            conversation_id = self._conversation_keys.get((config_id, channel, contact_id))
            if conversation_id is None:
                return None
            return self.get_conversation(conversation_id)

    def create_conversation(self, conversation: Conversation) -> Conversation:
        key = (conversation.config_id, conversation.channel, conversation.contact_id)
        with self._lock:
            if key in self._conversation_keys:
                raise ValueError(f"Conversation already exists for {key}")
            self._conversation_keys[key] = conversation.id
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
            self._messages[conversation.id] = []
        return conversation

    def save_conversation(self, conversation: Conversation) -> Conversation:
        with self._lock:
            if conversation.id not in self._conversations:
                raise KeyError(f"Conversation {conversation.id} not found")
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    def list_conversations(
        self,
        config_id: UUID,
        *,
        status: Optional[ConversationStatus] = None,
        limit: int = 50,
    ) -> List[Conversation]:
        with self._lock:
            items = [
                c.model_copy(deep=True)
                for c in self._conversations.values()
                if c.config_id == config_id and (status is None or c.status == status)
            ]
        items.sort(
            key=lambda c: (c.last_message_at or c.created_at, c.created_at),
            reverse=True,
        )
        return items[:limit]

    def list_idle_conversations(
        self, config_id: UUID, *, older_than: datetime
    ) -> List[Conversation]:
        with self._lock:
            items = [
                c.model_copy(deep=True)
                for c in self._conversations.values()
                if c.config_id == config_id
                and c.status == ConversationStatus.OPEN
                and c.last_message_at is not None
                and c.last_message_at <= older_than
            ]
        items.sort(key=lambda c: (c.last_message_at, c.created_at))
        return items

    # Messages ----------------------------------------------------------------
    def find_message_by_external(
        self, channel: Channel, external_message_id: str
    ) -> Optional[Message]:
        if not external_message_id:
            return None
        with self._lock:
            message_id = self._external_ids.get((channel, external_message_id))
            if message_id is None:
                return None
            for messages in self._messages.values():
                for message in messages:
                    if message.id == message_id:
                        return message.model_copy(deep=True)
        return None

    def add_message(self, message: Message) -> Message:
        with self._lock:
            if message.conversation_id not in self._conversations:
                raise KeyError(f"Conversation {message.conversation_id} not found")
            key = (message.channel, message.external_message_id)
            if message.external_message_id and key in self._external_ids:
                raise DuplicateMessage(
                    f"Message {message.external_message_id} already stored for {message.channel.value}"
                )
            thread = self._messages.setdefault(message.conversation_id, [])
            message.sequence = (thread[-1].sequence if thread else 0) + 1
            thread.append(message.model_copy(deep=True))
            if message.external_message_id:
                self._external_ids[key] = message.id
        return message

    def save_message(self, message: Message) -> Message:
        with self._lock:
            thread = self._messages.get(message.conversation_id, [])
            for index, existing in enumerate(thread):
                if existing.id == message.id:
                    if (
                        message.external_message_id
                        and message.external_message_id != existing.external_message_id
                    ):
                        key = (message.channel, message.external_message_id)
                        if key in self._external_ids:
                            raise DuplicateMessage(
                                f"Message {message.external_message_id} already stored"
                            )
                        self._external_ids[key] = message.id
                    thread[index] = message.model_copy(deep=True)
                    return message
        raise KeyError(f"Message {message.id} not found")

    def list_messages(
        self, conversation_id: UUID, limit: Optional[int] = None
    ) -> List[Message]:
        with self._lock:
            thread = self._messages.get(conversation_id, [])
            if limit is not None:
                thread = thread[-limit:] if limit > 0 else []
            return [m.model_copy(deep=True) for m in thread]

    def latest_message(self, conversation_id: UUID) -> Optional[Message]:
        with self._lock:
            thread = self._messages.get(conversation_id) or []
            return thread[-1].model_copy(deep=True) if thread else None

    # Templates ---------------------------------------------------------------
    def get_template(self, config_id: UUID, template_id: UUID) -> Optional[Template]:
        with self._lock:
            template = self._templates.get(template_id)
            if template is None or template.config_id != config_id:
                return None
            return template.model_copy(deep=True)

    def find_template(self, template_id: UUID) -> Optional[Template]:
        with self._lock:
            template = self._templates.get(template_id)
            return template.model_copy(deep=True) if template else None

    def save_template(self, template: Template) -> Template:
        with self._lock:
            self._templates[template.id] = template.model_copy(deep=True)
        return template

    def delete_template(self, config_id: UUID, template_id: UUID) -> bool:
        with self._lock:
            template = self._templates.get(template_id)
            if template is None or template.config_id != config_id:
                return False
            del self._templates[template_id]
        return True

    def list_templates(self, config_id: UUID) -> List[Template]:
        with self._lock:
            items = [
                t.model_copy(deep=True)
                for t in self._templates.values()
                if t.config_id == config_id
            ]
        items.sort(key=lambda t: t.name)
        return items

    # Quick replies -----------------------------------------------------------
    def get_quick_reply(self, tenant_id: UUID, shortcut: str) -> Optional[QuickReply]:
        with self._lock:
            reply = self._quick_replies.get((tenant_id, shortcut))
            return reply.model_copy(deep=True) if reply else None

    def save_quick_reply(self, reply: QuickReply) -> QuickReply:
        with self._lock:
            self._quick_replies[(reply.tenant_id, reply.shortcut)] = reply.model_copy(
                deep=True
            )
        return reply

    def delete_quick_reply(self, tenant_id: UUID, shortcut: str) -> bool:
        with self._lock:
            return self._quick_replies.pop((tenant_id, shortcut), None) is not None

    def list_quick_replies(self, tenant_id: UUID) -> List[QuickReply]:
        with self._lock:
            items = [
                r.model_copy(deep=True)
                for (owner, _), r in self._quick_replies.items()
                if owner == tenant_id
            ]
        items.sort(key=lambda r: r.shortcut)
        return items

    # Automations -------------------------------------------------------------
    def get_automation(self, config_id: UUID, automation_id: UUID) -> Optional[Automation]:
        with self._lock:
            automation = self._automations.get(automation_id)
            if automation is None or automation.config_id != config_id:
                return None
            return automation.model_copy(deep=True)

    def save_automation(self, automation: Automation) -> Automation:
        with self._lock:
            existing = self._automations.get(automation.id)
            if existing is not None:
                # Counters only move through record_automation_firing.
                automation.times_triggered = existing.times_triggered
                automation.last_triggered_at = existing.last_triggered_at
            self._automations[automation.id] = automation.model_copy(deep=True)
        return automation

    def record_automation_firing(
        self, config_id: UUID, automation_id: UUID, at: datetime
    ) -> Optional[Automation]:
        with self._lock:
            automation = self._automations.get(automation_id)
            if automation is None or automation.config_id != config_id:
                return None
            automation.times_triggered += 1
            automation.last_triggered_at = at
            return automation.model_copy(deep=True)

    def delete_automation(self, config_id: UUID, automation_id: UUID) -> bool:
        with self._lock:
            automation = self._automations.get(automation_id)
            if automation is None or automation.config_id != config_id:
                return False
            del self._automations[automation_id]
        return True

    def list_automations(self, config_id: UUID) -> List[Automation]:
        with self._lock:
            items = [
                a.model_copy(deep=True)
                for a in self._automations.values()
                if a.config_id == config_id
            ]
        items.sort(key=lambda a: (a.created_at, str(a.id)))
        return items


class PostgresMessagingRepository(MessagingRepository):
    """PostgreSQL implementation of :class:`MessagingRepository`.

    Indexed columns carry what the engine filters on; the full record lives in
    the ``payload`` JSONB column and is validated back into the schema on
    read.

    Each operation opens its own connection from ``connect`` and commits when
    it returns, so calls from the event loop's worker threads and from
    threadpool routes never share a connection.
    """

    def __init__(self, connect: Callable[[], psycopg.Connection]) -> None:
        self._connect = connect

    @classmethod
    def from_url(cls, database_url: str) -> "PostgresMessagingRepository":
        return cls(partial(psycopg.connect, database_url))

    # Utility -----------------------------------------------------------------
    @contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        with self._connect() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                yield cur

    @staticmethod
    def _payload(model: Any) -> Jsonb:
        return Jsonb(model.model_dump(mode="json"))

    def _fetch_one(self, query: str, params: Tuple[Any, ...]) -> Optional[Dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(query, params)
            return cur.fetchone()

    def _fetch_all(self, query: str, params: Tuple[Any, ...]) -> List[Dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall()

    # Configs -----------------------------------------------------------------
    def get_config(self, config_id: UUID) -> Optional[MessagingConfig]:
        row = self._fetch_one(
            "SELECT payload FROM messaging_configs WHERE id = %s", (config_id,)
        )
        return MessagingConfig.model_validate(row["payload"]) if row else None

    def save_config(self, config: MessagingConfig) -> MessagingConfig:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO messaging_configs (id, tenant_id, wa_verify_token, is_active, payload)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET wa_verify_token = EXCLUDED.wa_verify_token,
                    is_active = EXCLUDED.is_active,
                    payload = EXCLUDED.payload,
                    updated_at = now()
                """,
                (
                    config.id,
                    config.tenant_id,
                    config.wa_verify_token or None,
                    config.is_active,
                    self._payload(config),
                ),
            )
        return config

    def find_config_by_verify_token(self, token: str) -> Optional[MessagingConfig]:
        row = self._fetch_one(
            "SELECT payload FROM messaging_configs WHERE wa_verify_token = %s LIMIT 1",
            (token,),
        )
        return MessagingConfig.model_validate(row["payload"]) if row else None

    def list_configs(self, *, active_only: bool = True) -> List[MessagingConfig]:
        query = "SELECT payload FROM messaging_configs"
        if active_only:
            query += " WHERE is_active"
        rows = self._fetch_all(query + " ORDER BY created_at", ())
        return [MessagingConfig.model_validate(row["payload"]) for row in rows]

    # Conversations -----------------------------------------------------------
    def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        row = self._fetch_one(
            "SELECT payload FROM messaging_conversations WHERE id = %s",
            (conversation_id,),
        )
        return Conversation.model_validate(row["payload"]) if row else None

    def find_conversation(
        self, config_id: UUID, channel: Channel, contact_id: str
    ) -> Optional[Conversation]:
        row = self._fetch_one(
            """
            SELECT payload FROM messaging_conversations
            WHERE config_id = %s AND channel = %s AND contact_id = %s
            """,
            (config_id, channel.value, contact_id),
        )
        return Conversation.model_validate(row["payload"]) if row else None

    def create_conversation(self, conversation: Conversation) -> Conversation:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO messaging_conversations
                    (id, tenant_id, config_id, channel, contact_id, status, last_message_at, payload)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    conversation.id,
                    conversation.tenant_id,
                    conversation.config_id,
                    conversation.channel.value,
                    conversation.contact_id,
                    conversation.status.value,
                    conversation.last_message_at,
                    self._payload(conversation),
                ),
            )
        return conversation

    def save_conversation(self, conversation: Conversation) -> Conversation:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE messaging_conversations
                SET status = %s, last_message_at = %s, payload = %s, updated_at = now()
                WHERE id = %s
                """,
                (
                    conversation.status.value,
                    conversation.last_message_at,
                    self._payload(conversation),
                    conversation.id,
                ),
            )
            if cur.rowcount == 0:
                raise KeyError(f"Conversation {conversation.id} not found")
        return conversation

    def list_conversations(
        self,
        config_id: UUID,
        *,
        status: Optional[ConversationStatus] = None,
        limit: int = 50,
    ) -> List[Conversation]:
        clauses = ["config_id = %s"]
        params: List[Any] = [config_id]
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        params.append(limit)
        rows = self._fetch_all(
            "SELECT payload FROM messaging_conversations "
            f"WHERE {' AND '.join(clauses)} "
            "ORDER BY last_message_at DESC NULLS LAST, created_at DESC LIMIT %s",
            tuple(params),
        )
        return [Conversation.model_validate(row["payload"]) for row in rows]

    def list_idle_conversations(
        self, config_id: UUID, *, older_than: datetime
    ) -> List[Conversation]:
        rows = self._fetch_all(
            """
            SELECT payload FROM messaging_conversations
            WHERE config_id = %s AND status = 'open' AND last_message_at <= %s
            ORDER BY last_message_at ASC
            """,
            (config_id, older_than),
        )
        return [Conversation.model_validate(row["payload"]) for row in rows]

    # Messages ----------------------------------------------------------------
    def find_message_by_external(
        self, channel: Channel, external_message_id: str
    ) -> Optional[Message]:
        if not external_message_id:
            return None
        row = self._fetch_one(
            """
            SELECT payload FROM messaging_messages
            WHERE channel = %s AND external_message_id = %s
            """,
            (channel.value, external_message_id),
        )
        return Message.model_validate(row["payload"]) if row else None

    def add_message(self, message: Message) -> Message:
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    SELECT coalesce(max(sequence), 0) + 1 AS next
                    FROM messaging_messages WHERE conversation_id = %s
                    """,
                    (message.conversation_id,),
                )
                message.sequence = cur.fetchone()["next"]
                cur.execute(
                    """
                    INSERT INTO messaging_messages
                        (id, tenant_id, conversation_id, channel, external_message_id,
                         direction, sequence, created_at, payload)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        message.id,
                        message.tenant_id,
                        message.conversation_id,
                        message.channel.value,
                        message.external_message_id or None,
                        message.direction.value,
                        message.sequence,
                        message.created_at,
                        self._payload(message),
                    ),
                )
        except psycopg.errors.UniqueViolation as exc:
            raise DuplicateMessage(
                f"Message {message.external_message_id} already stored for {message.channel.value}"
            ) from exc
        return message

    def save_message(self, message: Message) -> Message:
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    UPDATE messaging_messages
                    SET external_message_id = %s, payload = %s
                    WHERE id = %s
                    """,
                    (message.external_message_id or None, self._payload(message), message.id),
                )
                if cur.rowcount == 0:
                    raise KeyError(f"Message {message.id} not found")
        except psycopg.errors.UniqueViolation as exc:
            raise DuplicateMessage(
                f"Message {message.external_message_id} already stored"
            ) from exc
        return message

    def list_messages(
        self, conversation_id: UUID, limit: Optional[int] = None
    ) -> List[Message]:
        if limit is None:
            rows = self._fetch_all(
                """
                SELECT payload FROM messaging_messages
                WHERE conversation_id = %s ORDER BY sequence ASC
                """,
                (conversation_id,),
            )
        else:
            rows = self._fetch_all(
                """
                SELECT payload FROM (
                    SELECT payload, sequence FROM messaging_messages
                    WHERE conversation_id = %s ORDER BY sequence DESC LIMIT %s
                ) recent ORDER BY sequence ASC
                """,
                (conversation_id, limit),
            )
        return [Message.model_validate(row["payload"]) for row in rows]

    def latest_message(self, conversation_id: UUID) -> Optional[Message]:
        row = self._fetch_one(
            """
            SELECT payload FROM messaging_messages
            WHERE conversation_id = %s ORDER BY sequence DESC LIMIT 1
            """,
            (conversation_id,),
        )
        return Message.model_validate(row["payload"]) if row else None

    # Templates ---------------------------------------------------------------
    def get_template(self, config_id: UUID, template_id: UUID) -> Optional[Template]:
        row = self._fetch_one(
            "SELECT payload FROM messaging_templates WHERE config_id = %s AND id = %s",
            (config_id, template_id),
        )
        return Template.model_validate(row["payload"]) if row else None

    def find_template(self, template_id: UUID) -> Optional[Template]:
        row = self._fetch_one(
            "SELECT payload FROM messaging_templates WHERE id = %s", (template_id,)
        )
        return Template.model_validate(row["payload"]) if row else None

    def save_template(self, template: Template) -> Template:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO messaging_templates (id, tenant_id, config_id, name, approval_status, payload)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET name = EXCLUDED.name,
                    approval_status = EXCLUDED.approval_status,
                    payload = EXCLUDED.payload,
                    updated_at = now()
                """,
                (
                    template.id,
                    template.tenant_id,
                    template.config_id,
                    template.name,
                    template.approval_status.value,
                    self._payload(template),
                ),
            )
        return template

    def delete_template(self, config_id: UUID, template_id: UUID) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM messaging_templates WHERE config_id = %s AND id = %s",
                (config_id, template_id),
            )
            return cur.rowcount > 0

    def list_templates(self, config_id: UUID) -> List[Template]:
        rows = self._fetch_all(
            "SELECT payload FROM messaging_templates WHERE config_id = %s ORDER BY name",
            (config_id,),
        )
        return [Template.model_validate(row["payload"]) for row in rows]

    # Quick replies -----------------------------------------------------------
    def get_quick_reply(self, tenant_id: UUID, shortcut: str) -> Optional[QuickReply]:
        row = self._fetch_one(
            "SELECT payload FROM messaging_quick_replies WHERE tenant_id = %s AND shortcut = %s",
            (tenant_id, shortcut),
        )
        return QuickReply.model_validate(row["payload"]) if row else None

    def save_quick_reply(self, reply: QuickReply) -> QuickReply:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO messaging_quick_replies (tenant_id, shortcut, payload)
                VALUES (%s, %s, %s)
                ON CONFLICT (tenant_id, shortcut) DO UPDATE
                SET payload = EXCLUDED.payload, updated_at = now()
                """,
                (reply.tenant_id, reply.shortcut, self._payload(reply)),
            )
        return reply

    def delete_quick_reply(self, tenant_id: UUID, shortcut: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM messaging_quick_replies WHERE tenant_id = %s AND shortcut = %s",
                (tenant_id, shortcut),
            )
            return cur.rowcount > 0

    def list_quick_replies(self, tenant_id: UUID) -> List[QuickReply]:
        rows = self._fetch_all(
            "SELECT payload FROM messaging_quick_replies WHERE tenant_id = %s ORDER BY shortcut",
            (tenant_id,),
        )
        return [QuickReply.model_validate(row["payload"]) for row in rows]

    # Automations -------------------------------------------------------------
    def get_automation(self, config_id: UUID, automation_id: UUID) -> Optional[Automation]:
        row = self._fetch_one(
            "SELECT payload FROM messaging_automations WHERE config_id = %s AND id = %s",
            (config_id, automation_id),
        )
        return Automation.model_validate(row["payload"]) if row else None

    def save_automation(self, automation: Automation) -> Automation:
        # Firing counters on an existing row are kept; only
        # record_automation_firing moves them.
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO messaging_automations AS existing
                    (id, tenant_id, config_id, trigger_type, is_active, created_at, payload)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET trigger_type = EXCLUDED.trigger_type,
                    is_active = EXCLUDED.is_active,
                    payload = EXCLUDED.payload || jsonb_build_object(
                        'times_triggered',
                        coalesce(existing.payload -> 'times_triggered', '0'::jsonb),
                        'last_triggered_at',
                        coalesce(existing.payload -> 'last_triggered_at', 'null'::jsonb)
                    ),
                    updated_at = now()
                RETURNING payload
                """,
                (
                    automation.id,
                    automation.tenant_id,
                    automation.config_id,
                    automation.trigger_type.value,
                    automation.is_active,
                    automation.created_at,
                    self._payload(automation),
                ),
            )
            stored = Automation.model_validate(cur.fetchone()["payload"])
        automation.times_triggered = stored.times_triggered
        automation.last_triggered_at = stored.last_triggered_at
        return automation

    def record_automation_firing(
        self, config_id: UUID, automation_id: UUID, at: datetime
    ) -> Optional[Automation]:
        row = self._fetch_one(
            """
            UPDATE messaging_automations
            SET payload = jsonb_set(
                    jsonb_set(
                        payload,
                        '{times_triggered}',
                        to_jsonb(coalesce((payload ->> 'times_triggered')::int, 0) + 1)
                    ),
                    '{last_triggered_at}',
                    to_jsonb(%s::text)
                ),
                updated_at = now()
            WHERE config_id = %s AND id = %s
            RETURNING payload
            """,
            (at.isoformat(), config_id, automation_id),
        )
        return Automation.model_validate(row["payload"]) if row else None

    def delete_automation(self, config_id: UUID, automation_id: UUID) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM messaging_automations WHERE config_id = %s AND id = %s",
                (config_id, automation_id),
            )
            return cur.rowcount > 0

    def list_automations(self, config_id: UUID) -> List[Automation]:
        rows = self._fetch_all(
            """
            SELECT payload FROM messaging_automations
            WHERE config_id = %s ORDER BY created_at ASC, id ASC
            """,
            (config_id,),
        )
        return [Automation.model_validate(row["payload"]) for row in rows]
