import json
import logging

from fastapi import FastAPI, Request
from starlette.testclient import TestClient

from inbox.app_logging import _install_access_logging, _scrub


def _create_app() -> FastAPI:
    app = FastAPI()

    @app.post("/api/messaging/webhooks/cfg/whatsapp")
    async def webhook(request: Request):
        return {"rid": request.state.request_id}

    @app.get("/api/health")
    async def health():  # pragma: no cover - simple
        return {"status": "ok"}

    _install_access_logging(app)
    return app


def test_webhook_access_line_masks_signature_and_contacts(caplog, monkeypatch):
    monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
    app = _create_app()

    with (
        TestClient(app) as client,
        caplog.at_level(logging.INFO, logger="uvicorn.access"),
    ):
        resp = client.post(
            "/api/messaging/webhooks/cfg/whatsapp",
            json={
                "entry": [
                    {
                        "changes": [
                            {
                                "value": {
                                    "contacts": [{"wa_id": "5511999991234"}],
                                    "messages": [
                                        {"from": "5511999991234", "text": {"body": "hi"}}
                                    ],
                                }
                            }
                        ]
                    }
                ]
            },
            headers={"X-Request-Id": "abc", "X-Hub-Signature-256": "sha256=deadbeef"},
        )

        assert resp.status_code == 200
        assert resp.headers["X-Request-Id"] == "abc"
        assert resp.json() == {"rid": "abc"}

        record = caplog.records[0]
        data = json.loads(record.getMessage())
        assert data["request_id"] == "abc"
        assert data["headers"]["x-hub-signature-256"] == "***"
        assert data["webhook"] == {"config_id": "cfg", "channel": "whatsapp"}
        value = data["body"]["entry"][0]["changes"][0]["value"]
        assert value["contacts"][0]["wa_id"] == "***1234"
        assert value["messages"][0]["from"] == "***1234"
        assert value["messages"][0]["text"]["body"] == "hi"

        caplog.clear()
        client.get("/api/health")
        assert len(caplog.records) == 0


def test_scrub_hides_provider_credentials():
    scrubbed = _scrub(
        {
            "wa_access_token": "EAAG-secret",
            "email_api_token": "pm-secret",
            "customer_email": "ana@example.com",
            "business_name": "Acme",
            "to": "abc",
        }
    )
    assert scrubbed == {
        "wa_access_token": "***",
        "email_api_token": "***",
        "customer_email": "***.com",
        "business_name": "Acme",
        "to": "***",
    }
