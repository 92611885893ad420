import json
import logging
import tempfile
from pathlib import Path
from logging.handlers import TimedRotatingFileHandler

import pytest
from starlette.testclient import TestClient

from inbox.app_logging import LogSettings, init_logging


def _clear_handlers(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    return logger


@pytest.fixture
def log_dir(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("LOG_DIR", tmpdir)
        yield Path(tmpdir)


def test_log_settings_from_env(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_RETENTION_DAYS", "14")
    monkeypatch.setenv("LOG_ROTATE_UTC", "TRUE")
    monkeypatch.delenv("LOG_JSON", raising=False)

    settings = LogSettings.from_env()

    assert settings.level == logging.DEBUG
    assert settings.retention_days == 14
    assert settings.rotate_utc is True
    assert settings.json is False


def test_rotation_applies_to_both_logs(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_RETENTION_DAYS", "5")
    monkeypatch.setenv("LOG_ROTATE_UTC", "true")
    engine_logger = _clear_handlers("inbox")
    access_logger = _clear_handlers("uvicorn.access")

    init_logging()

    for logger in (engine_logger, access_logger):
        [handler] = [h for h in logger.handlers if isinstance(h, TimedRotatingFileHandler)]
        assert handler.when == "MIDNIGHT"
        assert handler.backupCount == 5
        assert handler.utc is True

    engine_logger.handlers.clear()
    access_logger.handlers.clear()


def test_engine_log_and_access_log_files(log_dir, app_factory):
    _clear_handlers("inbox")
    _clear_handlers("uvicorn.access")
    app = app_factory(log_dir, log_request_bodies=True)

    # Module loggers such as inbox.engine propagate into the inbox handler.
    logging.getLogger("inbox.engine").info("conversation routed")

    with TestClient(app) as client:
        resp = client.post(
            "/echo",
            json={"wa_webhook_secret": "s3cret", "customer_phone": "+5511988887777"},
            headers={"Authorization": "Bearer secret"},
        )
        assert resp.status_code == 200

    app_logger = logging.getLogger("inbox")
    for logger in (app_logger, logging.getLogger("uvicorn.access")):
        for handler in logger.handlers:
            handler.flush()

    app_log = log_dir / "inbox.log"
    access_log = log_dir / "access.log"

    assert app_log.exists()
    assert "in inbox.engine: conversation routed" in app_log.read_text()

    assert access_log.exists() and access_log.read_text().strip()
    access_line = access_log.read_text().splitlines()[-1]
    payload = access_line.split(": ", 1)[1]
    data = json.loads(payload)
    assert data["headers"]["authorization"] == "***"
    assert data["body"]["wa_webhook_secret"] == "***"
    assert data["body"]["customer_phone"] == "***7777"

    app_logger.handlers.clear()
    logging.getLogger("uvicorn.access").handlers.clear()
