import asyncio
import hashlib
import hmac
import json
import time
import uuid

import pytest

from conftest import web_chat_payload, whatsapp_payload
from inbox.conversations.repository import InMemoryMessagingRepository
from inbox.conversations.schemas import (
    ApprovalStatus,
    Channel,
    ConversationStatus,
    Direction,
    MessageStatus,
    MessagingConfig,
    Priority,
    QuickReplyUpsert,
    TemplateCreate,
)
from inbox.core.settings import EngineSettings
from inbox.engine import MessagingEngine
from inbox.errors import (
    AuthInvalid,
    ChannelDispatchFailure,
    ChannelNotEnabled,
    ConfigNotFound,
    ConversationNotFound,
    InvalidSignature,
    ProviderUnavailable,
    QuickReplyNotFound,
    TemplateNotApproved,
)
from inbox.notifications import QueueNotifier


def _ingest(engine, config_id, channel, payload, **kwargs):
    async def scenario():
        result = await engine.ingest(config_id, channel, payload, **kwargs)
        await engine.drain()
        return result

    return asyncio.run(scenario())


def test_ingest_routes_and_reports_counts(engine, config, repository, notifier):
    result = _ingest(engine, config.id, "web_chat", web_chat_payload("Hi", customerName="Ana"))

    assert result.processed == 1 and result.duplicates == 0
    [conversation_id] = result.conversation_ids
    conversation = repository.get_conversation(conversation_id)
    assert conversation.customer_name == "Ana"
    assert conversation.unread_count == 1
    [note] = notifier.drain()
    assert note.kind == "new_conversation"
    assert note.recipients == ["owner@acme.test"]


def test_redelivered_webhook_is_idempotent(engine, config, repository):
    payload = whatsapp_payload("Olá", message_id="wamid.abc")
    first = _ingest(engine, config.id, "whatsapp", payload)
    again = _ingest(engine, config.id, "whatsapp", payload)

    assert again.processed == 0 and again.duplicates == 1
    assert again.conversation_ids == first.conversation_ids
    assert len(repository.list_messages(first.conversation_ids[0])) == 1


def test_concurrent_first_messages_share_one_conversation(engine, config, repository):
    async def scenario():
        results = await asyncio.gather(
            *(
                engine.ingest(
                    config.id, "web_chat", web_chat_payload(f"msg {i}", message_id=f"wc-{i}")
                )
                for i in range(10)
            )
        )
        await engine.drain()
        return results

    results = asyncio.run(scenario())

    conversation_ids = {r.conversation_ids[0] for r in results}
    assert len(conversation_ids) == 1
    [conversation_id] = conversation_ids
    messages = repository.list_messages(conversation_id)
    assert len(messages) == 10
    assert [m.sequence for m in messages] == list(range(1, 11))
    assert repository.get_conversation(conversation_id).unread_count == 10
    assert sum(r.routes[0].created for r in results) == 1


def test_concurrent_duplicate_deliveries_store_once(engine, config, repository):
    payload = web_chat_payload("Hi", message_id="same")

    async def scenario():
        results = await asyncio.gather(
            *(engine.ingest(config.id, "web_chat", payload) for _ in range(5))
        )
        await engine.drain()
        return results

    results = asyncio.run(scenario())
    assert sum(r.processed for r in results) == 1
    assert sum(r.duplicates for r in results) == 4


def test_ingest_rejects_unknown_or_disabled_configs(engine, make_config):
    with pytest.raises(ConfigNotFound):
        _ingest(engine, uuid.uuid4(), "web_chat", web_chat_payload())

    config = make_config(channels_enabled=[Channel.WEB_CHAT])
    with pytest.raises(ChannelNotEnabled):
        _ingest(engine, config.id, "email", {"MessageID": "1", "From": "a@b.c"})

    engine.deactivate_config(config.id)
    with pytest.raises(ConfigNotFound):
        _ingest(engine, config.id, "web_chat", web_chat_payload())


def test_malformed_payload_is_dropped(engine, config, repository):
    result = _ingest(engine, config.id, "web_chat", {"message": "no session"})

    assert (result.processed, result.dropped) == (0, 1)
    assert result.conversation_ids == []
    assert repository.list_conversations(config.id) == []


def test_signed_whatsapp_webhooks(engine, make_config):
    config = make_config(wa_webhook_secret="app-secret")
    payload = whatsapp_payload("hi")
    body = json.dumps(payload).encode()
    signature = "sha256=" + hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

    with pytest.raises(InvalidSignature):
        _ingest(engine, config.id, "whatsapp", payload, body=body, headers={})
    result = _ingest(
        engine, config.id, "whatsapp", payload, body=body, headers={"X-Hub-Signature-256": signature}
    )
    assert result.processed == 1


def test_whatsapp_receipts_update_sent_messages(engine, config, repository):
    inbound = _ingest(engine, config.id, "whatsapp", whatsapp_payload("hi"))
    conversation_id = inbound.conversation_ids[0]
    sent = asyncio.run(engine.send(config.id, conversation_id, "Hello Maria"))
    external_id = sent.delivery.external_message_id

    receipts = _ingest(
        engine,
        config.id,
        "whatsapp",
        whatsapp_payload(statuses=[{"id": external_id, "status": "read", "timestamp": "1700000500"}]),
    )

    assert receipts.receipts == 1
    stored = repository.list_messages(conversation_id)[-1]
    assert stored.status is MessageStatus.READ
    assert stored.read_at is not None


def test_send_persists_and_dispatches(engine, config, repository, outbox):
    conversation_id = _ingest(engine, config.id, "web_chat", web_chat_payload()).conversation_ids[0]

    result = asyncio.run(
        engine.send(
            config.id,
            conversation_id,
            "We are on it",
            channel="web_chat",
            contact_id="session-1",
        )
    )

    assert result.message.status is MessageStatus.SENT
    assert result.delivery.attempts == 1
    [outbound] = outbox.sent
    assert outbound.contact_id == "session-1"
    assert outbound.message_id == result.message.id
    conversation = repository.get_conversation(conversation_id)
    assert conversation.unread_count == 0
    assert conversation.last_message_preview == "We are on it"


def test_send_never_creates_conversations(engine, config, make_config):
    with pytest.raises(ConversationNotFound):
        asyncio.run(engine.send(config.id, uuid.uuid4(), "Hi"))

    conversation_id = _ingest(engine, config.id, "web_chat", web_chat_payload()).conversation_ids[0]
    other = make_config()
    with pytest.raises(ConversationNotFound):
        asyncio.run(engine.send(other.id, conversation_id, "Hi"))
    with pytest.raises(ConversationNotFound):
        asyncio.run(engine.send(config.id, conversation_id, "Hi", contact_id="someone-else"))
    with pytest.raises(ValueError):
        asyncio.run(engine.send(config.id, conversation_id, "Hi", channel="email"))
    with pytest.raises(ValueError):
        asyncio.run(engine.send(config.id, conversation_id, "   "))


def test_send_expands_quick_replies(engine, config, outbox):
    conversation_id = _ingest(engine, config.id, "web_chat", web_chat_payload()).conversation_ids[0]
    engine.quick_replies.upsert(
        config.tenant_id, "/hours", QuickReplyUpsert(body="We are open 9am to 6pm.")
    )

    result = asyncio.run(engine.send(config.id, conversation_id, quick_reply="/hours"))
    assert result.message.body == "We are open 9am to 6pm."

    with pytest.raises(QuickReplyNotFound):
        asyncio.run(engine.send(config.id, conversation_id, quick_reply="/missing"))


def test_transient_failure_leaves_failed_message(engine, config, repository, outbox, sleeps):
    conversation_id = _ingest(engine, config.id, "web_chat", web_chat_payload()).conversation_ids[0]
    outbox.failures = [ProviderUnavailable("503")] * 3

    with pytest.raises(ChannelDispatchFailure) as excinfo:
        asyncio.run(engine.send(config.id, conversation_id, "Hello"))

    assert excinfo.value.transient is True
    stored = repository.list_messages(conversation_id)[-1]
    assert stored.id == excinfo.value.message_id
    assert stored.direction is Direction.OUTBOUND
    assert stored.status is MessageStatus.FAILED
    assert "503" in stored.error_message
    assert sleeps == [0.5, 1.0]


def test_auth_failure_unverifies_config_and_notifies(engine, make_config, repository, outbox, notifier):
    config = make_config(is_verified=True)
    conversation_id = _ingest(engine, config.id, "web_chat", web_chat_payload()).conversation_ids[0]
    notifier.drain()
    outbox.failures = [AuthInvalid("token expired")]

    with pytest.raises(ChannelDispatchFailure) as excinfo:
        asyncio.run(engine.send(config.id, conversation_id, "Hello"))

    assert excinfo.value.transient is False
    assert repository.get_config(config.id).is_verified is False
    assert [n.kind for n in notifier.drain()] == ["channel_auth_invalid"]
    assert repository.list_messages(conversation_id)[-1].status is MessageStatus.FAILED


def test_agent_actions(engine, config, repository):
    conversation_id = _ingest(engine, config.id, "web_chat", web_chat_payload()).conversation_ids[0]

    conversation = asyncio.run(engine.mark_read(config.id, conversation_id))
    assert conversation.unread_count == 0
    conversation = asyncio.run(engine.assign(config.id, conversation_id, "ana"))
    assert conversation.status is ConversationStatus.ASSIGNED
    conversation = asyncio.run(engine.set_priority(config.id, conversation_id, Priority.URGENT))
    assert conversation.priority is Priority.URGENT
    conversation = asyncio.run(engine.escalate(config.id, conversation_id, "vip"))
    assert conversation.ai_escalated

    listed = engine.list_conversations(config.id, status=ConversationStatus.ASSIGNED)
    assert [c.id for c in listed] == [conversation_id]


def test_update_config_protects_identity_fields(engine, config):
    updated = engine.update_config(config.id, {"business_name": "Acme Ltd", "ai_enabled": True})
    assert updated.business_name == "Acme Ltd"
    assert updated.ai_enabled is True
    with pytest.raises(ValueError):
        engine.update_config(config.id, {"tenant_id": str(uuid.uuid4())})
    with pytest.raises(ValueError):
        engine.update_config(config.id, {"ai_min_confidence": 2})


def test_injected_empty_notifier_receives_notifications(repository, outbox):
    notifier = QueueNotifier()
    assert len(notifier) == 0
    engine = MessagingEngine(
        repository,
        settings=EngineSettings(openai_lang="en"),
        notifier=notifier,
        adapter_factory=outbox.factory,
    )
    assert engine.notifier is notifier

    config = engine.create_config(
        MessagingConfig(
            tenant_id=uuid.uuid4(),
            channels_enabled=[Channel.WEB_CHAT],
            notification_recipients=["owner@acme.test"],
        )
    )
    _ingest(engine, config.id, "web_chat", web_chat_payload())

    assert [n.kind for n in notifier.drain()] == ["new_conversation"]


def test_email_replies_reuse_the_customer_subject(engine, config, outbox):
    payload = {
        "MessageID": "<order-42@mail>",
        "From": "Ana Souza <ana@example.com>",
        "Subject": "Order 42",
        "TextBody": "Where is it?",
    }
    conversation_id = _ingest(engine, config.id, "email", payload).conversation_ids[0]

    asyncio.run(engine.send(config.id, conversation_id, "It ships today."))

    assert outbox.sent[-1].subject == "Re: Order 42"


def test_web_chat_customer_link_and_metadata_are_kept(engine, config, repository):
    result = _ingest(
        engine, config.id, "web_chat", web_chat_payload("Hi", customerId="cust-7")
    )

    conversation = repository.get_conversation(result.conversation_ids[0])
    assert conversation.customer_id == "cust-7"
    [message] = repository.list_messages(conversation.id)
    assert message.metadata == {"customer_id": "cust-7"}


def _approved_template(engine, config):
    template = engine.templates.create(
        config, TemplateCreate(name="shipped", body_text="Order {{1}} shipped.")
    )
    engine.templates.submit(config.id, template.id)
    engine.templates.apply_approval_result(template.id, ApprovalStatus.APPROVED)
    return template


def test_failed_template_send_is_not_counted(engine, config, repository, outbox):
    conversation_id = _ingest(engine, config.id, "web_chat", web_chat_payload()).conversation_ids[0]
    template = _approved_template(engine, config)
    outbox.failures = [ProviderUnavailable("503")] * 3

    with pytest.raises(ChannelDispatchFailure):
        asyncio.run(engine.send_template(config, conversation_id, template.id, ["42"]))

    assert engine.templates.get_template(config.id, template.id).times_sent == 0
    assert repository.list_messages(conversation_id)[-1].status is MessageStatus.FAILED


def test_revoked_template_is_not_sent(engine, config, repository, outbox):
    conversation_id = _ingest(engine, config.id, "web_chat", web_chat_payload()).conversation_ids[0]
    template = _approved_template(engine, config)
    engine.templates.apply_approval_result(
        template.id, ApprovalStatus.REJECTED, "Policy violation", config_id=config.id
    )

    with pytest.raises(TemplateNotApproved):
        asyncio.run(engine.send_template(config, conversation_id, template.id, ["42"]))

    assert outbox.sent == []
    assert len(repository.list_messages(conversation_id)) == 1
    assert engine.templates.get_template(config.id, template.id).times_sent == 0


class _SlowRepository(InMemoryMessagingRepository):
    def find_message_by_external(self, channel, external_message_id):
        time.sleep(0.2)
        return super().find_message_by_external(channel, external_message_id)


def test_ingest_keeps_the_event_loop_responsive(outbox):
    engine = MessagingEngine(
        _SlowRepository(),
        settings=EngineSettings(openai_lang="en"),
        adapter_factory=outbox.factory,
    )
    config = engine.create_config(
        MessagingConfig(tenant_id=uuid.uuid4(), channels_enabled=[Channel.WEB_CHAT])
    )

    async def scenario():
        ticks = 0
        task = asyncio.create_task(engine.ingest(config.id, "web_chat", web_chat_payload()))
        while not task.done():
            await asyncio.sleep(0.01)
            ticks += 1
        await engine.drain()
        return ticks, task.result()

    ticks, result = asyncio.run(scenario())
    assert result.processed == 1
    assert ticks >= 5
