import hashlib
import hmac
import json
import uuid
from typing import Any

import pytest
import requests

from conftest import web_chat_payload, whatsapp_payload
from inbox.channels import get_adapter
from inbox.channels.email import EmailAdapter
from inbox.channels.web_chat import WebChatAdapter
from inbox.channels.whatsapp import WhatsAppAdapter
from inbox.conversations.models import OutboundMessage
from inbox.conversations.schemas import Channel, MessageStatus, MessageType, MessagingConfig
from inbox.errors import AuthInvalid, MalformedPayload, ProviderUnavailable


class _Response:
    def __init__(self, status_code: int, data: Any = None) -> None:
        self.status_code = status_code
        self._data = data if data is not None else {}
        self.content = json.dumps(self._data).encode()
        self.text = self.content.decode()

    def json(self) -> Any:
        return self._data


class _Session:
    def __init__(self, response: _Response | Exception) -> None:
        self.response = response
        self.calls: list[dict[str, Any]] = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def _config(**overrides: Any) -> MessagingConfig:
    fields = {
        "tenant_id": uuid.uuid4(),
        "business_name": "Acme",
        "wa_phone_number_id": "123",
        "wa_access_token": "token",
        "email_from_address": "support@acme.test",
        "email_api_url": "https://mail.example/send",
        "email_api_token": "mail-token",
    }
    fields.update(overrides)
    return MessagingConfig(**fields)


def test_registry_resolves_builtin_adapters():
    assert get_adapter("WhatsApp") is WhatsAppAdapter
    assert get_adapter("email") is EmailAdapter
    assert get_adapter("web_chat") is WebChatAdapter
    with pytest.raises(KeyError):
        get_adapter("telegram")


def test_web_chat_normalizes_visitor_message():
    adapter = WebChatAdapter(_config())
    [inbound] = adapter.normalize_inbound(
        web_chat_payload(
            "  Where is my order?  ",
            customerName="Ana",
            customerEmail="ANA@Example.com",
            sentAt="2024-05-01T10:00:00Z",
        )
    )
    assert inbound.channel is Channel.WEB_CHAT
    assert inbound.contact_id == "session-1"
    assert inbound.external_message_id == "wc-1"
    assert inbound.body == "Where is my order?"
    assert inbound.customer_email == "ana@example.com"
    assert inbound.sent_at.year == 2024


def test_web_chat_derives_stable_id_from_sent_at():
    adapter = WebChatAdapter(_config())
    payload = web_chat_payload("hi", message_id=None, sentAt="2024-05-01T10:00:00Z")
    first = adapter.normalize_inbound(payload)[0].external_message_id
    second = adapter.normalize_inbound(payload)[0].external_message_id
    assert first == second
    assert first.startswith("wc-")


@pytest.mark.parametrize(
    "payload",
    [
        {"message": "hi"},
        {"sessionId": "s-1"},
        {"sessionId": "s", "message": "x", "sentAt": "nope"},
        {"sessionId": "s", "message": "x"},
    ],
)
def test_web_chat_rejects_malformed_payloads(payload):
    with pytest.raises(MalformedPayload):
        WebChatAdapter(_config()).normalize_inbound(payload)


def test_whatsapp_normalizes_text_and_location():
    adapter = WhatsAppAdapter(_config())
    payload = whatsapp_payload("Olá", sender="+55 11 99999-0000")
    payload["entry"][0]["changes"][0]["value"]["messages"].append(
        {
            "from": "5511999990000",
            "id": "wamid.2",
            "type": "location",
            "location": {"latitude": -23.5, "longitude": -46.6, "name": "Shop"},
        }
    )
    text, location = adapter.normalize_inbound(payload)
    assert text.contact_id == "5511999990000"
    assert text.body == "Olá"
    assert text.customer_phone == "5511999990000"
    assert location.message_type is MessageType.LOCATION
    assert location.latitude == -23.5
    assert location.body == "Shop"


def test_whatsapp_requires_entry_list():
    with pytest.raises(MalformedPayload):
        WhatsAppAdapter(_config()).normalize_inbound({"object": "whatsapp_business_account"})


def test_whatsapp_status_updates_become_receipts():
    adapter = WhatsAppAdapter(_config())
    payload = whatsapp_payload(
        statuses=[
            {"id": "wamid.out.1", "status": "delivered", "timestamp": "1700000100"},
            {
                "id": "wamid.out.2",
                "status": "failed",
                "errors": [{"message": "Recipient blocked"}],
            },
            {"id": "wamid.out.3", "status": "deleted"},
        ]
    )
    assert adapter.normalize_inbound(payload) == []
    delivered, failed = adapter.parse_status_updates(payload)
    assert delivered.status is MessageStatus.DELIVERED
    assert failed.status is MessageStatus.FAILED
    assert failed.error_message == "Recipient blocked"


def test_whatsapp_signature_verification():
    adapter = WhatsAppAdapter(_config(wa_webhook_secret="app-secret"))
    body = b'{"entry": []}'
    digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
    assert adapter.verify_signature(body, {"X-Hub-Signature-256": f"sha256={digest}"})
    assert not adapter.verify_signature(body, {"X-Hub-Signature-256": "sha256=bad"})
    assert not adapter.verify_signature(body, {})


def test_whatsapp_template_payload_carries_language_and_params():
    adapter = WhatsAppAdapter(_config())
    payload = adapter.build_outgoing_payload(
        OutboundMessage(
            channel=Channel.WHATSAPP,
            contact_id="+55 11 99999-0000",
            body="Your order 42 shipped",
            message_type=MessageType.TEMPLATE,
            template_name="order_shipped",
            template_language="pt_BR",
            template_params=["42"],
        )
    )
    assert payload["to"] == "5511999990000"
    assert payload["template"]["language"] == {"code": "pt_BR"}
    assert payload["template"]["components"][0]["parameters"] == [{"type": "text", "text": "42"}]


def test_whatsapp_dispatch_returns_provider_id():
    session = _Session(_Response(200, {"messages": [{"id": "wamid.out.9"}]}))
    adapter = WhatsAppAdapter(_config(), session=session)
    result = adapter.dispatch_outbound(
        OutboundMessage(channel=Channel.WHATSAPP, contact_id="5511999990000", body="Hi")
    )
    assert result.external_message_id == "wamid.out.9"
    assert session.calls[0]["url"].endswith("/123/messages")
    assert session.calls[0]["headers"]["Authorization"] == "Bearer token"


@pytest.mark.parametrize(
    "response, error",
    [
        (_Response(401, {"error": {"message": "expired"}}), AuthInvalid),
        (_Response(429), ProviderUnavailable),
        (_Response(503), ProviderUnavailable),
        (_Response(400, {"error": {"message": "bad number"}}), MalformedPayload),
        (requests.ConnectionError("down"), ProviderUnavailable),
    ],
)
def test_dispatch_failures_are_classified(response, error):
    adapter = WhatsAppAdapter(_config(), session=_Session(response))
    with pytest.raises(error):
        adapter.dispatch_outbound(
            OutboundMessage(channel=Channel.WHATSAPP, contact_id="5511999990000", body="Hi")
        )


def test_whatsapp_without_credentials_is_auth_invalid():
    adapter = WhatsAppAdapter(_config(wa_access_token=""))
    with pytest.raises(AuthInvalid):
        adapter.dispatch_outbound(
            OutboundMessage(channel=Channel.WHATSAPP, contact_id="1", body="Hi")
        )


def test_email_normalizes_inbound_parse_payload():
    [inbound] = EmailAdapter(_config()).normalize_inbound(
        {
            "MessageID": "<abc@mail>",
            "From": "Ana Souza <ANA@example.com>",
            "FromName": "Ana Souza",
            "Subject": "Refund",
            "TextBody": "I want a refund",
            "Date": "Wed, 01 May 2024 10:00:00 +0000",
        }
    )
    assert inbound.contact_id == "ana@example.com"
    assert inbound.customer_email == "ana@example.com"
    assert inbound.body == "I want a refund"
    assert inbound.metadata["subject"] == "Refund"


def test_email_requires_sender_and_id():
    with pytest.raises(MalformedPayload):
        EmailAdapter(_config()).normalize_inbound({"TextBody": "hello"})


def test_email_dispatch_posts_to_provider():
    session = _Session(_Response(200, {"MessageID": "pm-1"}))
    adapter = EmailAdapter(_config(), session=session)
    result = adapter.dispatch_outbound(
        OutboundMessage(channel=Channel.EMAIL, contact_id="ana@example.com", body="Hello Ana")
    )
    assert result.external_message_id == "pm-1"
    sent = session.calls[0]["json"]
    assert sent["From"] == "support@acme.test"
    assert sent["To"] == "ana@example.com"
    assert sent["Subject"] == "Re: your message to Acme"
