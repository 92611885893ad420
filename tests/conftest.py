import pathlib
import sys
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from inbox.app_logging import init_logging
from inbox.assistant import StaticDraftGenerator
from inbox.channels import get_adapter
from inbox.channels.base import ChannelAdapter
from inbox.channels.dispatch import Dispatcher
from inbox.conversations.models import (
    DeliveryReceipt,
    DeliveryResult,
    InboundMessage,
    OutboundMessage,
)
from inbox.conversations.repository import InMemoryMessagingRepository
from inbox.conversations.schemas import Channel, MessagingConfig
from inbox.core.settings import EngineSettings
from inbox.engine import MessagingEngine
from inbox.notifications import QueueNotifier


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app


@dataclass
class Outbox:
    """Shared state behind :class:`RecordingAdapter` instances.

    ``failures`` are raised in order by successive dispatch calls before any
    call succeeds.
    """

    sent: list[OutboundMessage] = field(default_factory=list)
    failures: list[Exception] = field(default_factory=list)

    def factory(self, channel: Channel, config: MessagingConfig) -> ChannelAdapter:
        return RecordingAdapter(channel, config, self)


class RecordingAdapter(ChannelAdapter):
    """Real inbound parsing, recorded outbound dispatch."""

    def __init__(self, channel: Channel, config: MessagingConfig, outbox: Outbox) -> None:
        super().__init__(config)
        self.channel_name = channel.value
        self._real = get_adapter(channel.value)(config)
        self._outbox = outbox

    def normalize_inbound(self, payload: Mapping[str, Any]) -> list[InboundMessage]:
        return self._real.normalize_inbound(payload)

    def parse_status_updates(self, payload: Mapping[str, Any]) -> list[DeliveryReceipt]:
        return self._real.parse_status_updates(payload)

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        return self._real.verify_signature(body, headers)

    def dispatch_outbound(self, message: OutboundMessage) -> DeliveryResult:
        self._outbox.sent.append(message)
        if self._outbox.failures:
            raise self._outbox.failures.pop(0)
        return DeliveryResult(external_message_id=f"ext-out-{len(self._outbox.sent)}")


def web_chat_payload(
    message: str = "Hello there",
    *,
    session_id: str = "session-1",
    message_id: str | None = "wc-1",
    **extra: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"sessionId": session_id, "message": message, **extra}
    if message_id:
        payload["messageId"] = message_id
    return payload


def whatsapp_payload(
    body: str = "Hi",
    *,
    message_id: str = "wamid.1",
    sender: str = "5511999990000",
    name: str = "Maria",
    statuses: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    value: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "contacts": [{"wa_id": sender, "profile": {"name": name}}],
        "messages": [
            {
                "from": sender,
                "id": message_id,
                "timestamp": "1700000000",
                "type": "text",
                "text": {"body": body},
            }
        ],
    }
    if statuses is not None:
        value = {"messaging_product": "whatsapp", "statuses": statuses}
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "waba-1", "changes": [{"field": "messages", "value": value}]}],
    }


@pytest.fixture
def repository() -> InMemoryMessagingRepository:
    return InMemoryMessagingRepository()


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def generator() -> StaticDraftGenerator:
    return StaticDraftGenerator("Happy to help with that!")


@pytest.fixture
def notifier() -> QueueNotifier:
    return QueueNotifier()


@pytest.fixture
def engine(repository, outbox, sleeps, generator, notifier) -> MessagingEngine:
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return MessagingEngine(
        repository,
        settings=EngineSettings(openai_lang="en", ai_draft_timeout_seconds=1.0),
        generator=generator,
        notifier=notifier,
        dispatcher=Dispatcher(max_attempts=3, backoff_seconds=0.5, sleep=_sleep),
        adapter_factory=outbox.factory,
    )


@pytest.fixture
def make_config(engine):
    def _make(**overrides: Any) -> MessagingConfig:
        fields: dict[str, Any] = {
            "tenant_id": uuid.uuid4(),
            "business_name": "Acme Store",
            "channels_enabled": [Channel.WEB_CHAT, Channel.WHATSAPP, Channel.EMAIL],
            "notification_recipients": ["owner@acme.test"],
            "wa_phone_number_id": "123",
            "wa_access_token": "token",
            "wa_verify_token": "verify-me",
        }
        fields.update(overrides)
        return engine.create_config(MessagingConfig(**fields))

    return _make


@pytest.fixture
def config(make_config) -> MessagingConfig:
    return make_config()
