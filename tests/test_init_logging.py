import json
import logging
from logging.handlers import TimedRotatingFileHandler

from fastapi import FastAPI

from inbox.app_logging import JsonFormatter, init_logging


def _clear_handlers(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    return logger


def test_init_logging_adds_handlers(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    app_logger = _clear_handlers("inbox")
    access_logger = _clear_handlers("uvicorn.access")

    app = FastAPI()
    init_logging(app)

    handler = next(h for h in app_logger.handlers if isinstance(h, TimedRotatingFileHandler))
    assert handler.baseFilename.endswith("inbox.log")
    assert any(isinstance(h, TimedRotatingFileHandler) for h in access_logger.handlers)

    app_logger.handlers.clear()
    access_logger.handlers.clear()


def test_init_logging_json_output_names_the_logger(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    monkeypatch.setenv("LOG_JSON", "true")
    app_logger = _clear_handlers("inbox")
    access_logger = _clear_handlers("uvicorn.access")

    init_logging()

    handler = app_logger.handlers[0]
    assert isinstance(handler.formatter, JsonFormatter)
    record = logging.LogRecord(
        "inbox.channels.dispatch", logging.WARNING, __file__, 1, "retrying %s", ("whatsapp",), None
    )
    data = json.loads(handler.formatter.format(record))
    assert data["logger"] == "inbox.channels.dispatch"
    assert data["message"] == "retrying whatsapp"
    assert data["level"] == "WARNING"

    app_logger.handlers.clear()
    access_logger.handlers.clear()


def test_init_logging_replaces_existing_access_handlers(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    access_logger = _clear_handlers("uvicorn.access")
    _clear_handlers("inbox")

    stream_handler = logging.StreamHandler()
    access_logger.addHandler(stream_handler)

    init_logging()

    assert stream_handler not in access_logger.handlers
    assert any(isinstance(h, TimedRotatingFileHandler) for h in access_logger.handlers)
    access_logger.handlers.clear()
    logging.getLogger("inbox").handlers.clear()
