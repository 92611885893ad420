"""Engine and access logging for the inbox service.

``init_logging`` attaches a timed-rotating handler to the ``inbox`` logger
(``inbox.log``) so every module logger below it (``inbox.engine``,
``inbox.channels.dispatch``...) lands in one file, and replaces the
``uvicorn.access`` handlers with an ``access.log`` one.

The access middleware writes one JSON line per request. Webhook calls are
tagged with their config id and channel. Provider credentials are masked and
customer contact identifiers found in webhook bodies (phone numbers, wa_id,
email addresses) keep only their last four characters.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

ENGINE_LOGGER = "inbox"
ACCESS_LOGGER = "uvicorn.access"

_WEBHOOK_PATH = re.compile(r"^/api/messaging/webhooks/(?P<config_id>[^/]+)/(?P<channel>[^/]+)$")
_QUIET_PATHS = frozenset({"/api/health", "/api/metrics"})


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").lower() == "true"


@dataclass(frozen=True)
class LogSettings:
    log_dir: str = "logs"
    level: int = logging.INFO
    json: bool = False
    request_bodies: bool = False
    retention_days: int = 7
    rotate_utc: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        level_name = os.getenv("LOG_LEVEL", "INFO").upper()
        return cls(
            log_dir=os.getenv("LOG_DIR", "logs"),
            level=getattr(logging, level_name, logging.INFO),
            json=_env_flag("LOG_JSON"),
            request_bodies=_env_flag("LOG_REQUEST_BODIES"),
            retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
            rotate_utc=_env_flag("LOG_ROTATE_UTC"),
        )


class JsonFormatter(logging.Formatter):
    """One JSON object per record, used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _formatter(settings: LogSettings) -> logging.Formatter:
    if settings.json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def _rotating_handler(settings: LogSettings, filename: str) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        os.path.join(settings.log_dir, filename),
        when="midnight",
        backupCount=settings.retention_days,
        utc=settings.rotate_utc,
    )
    handler.setFormatter(_formatter(settings))
    return handler


# ----------------------------------------------------------------------
# Scrubbing

SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "password",
    "token",
    "access_token",
    "x-hub-signature-256",
    "wa_access_token",
    "wa_webhook_secret",
    "wa_verify_token",
    "email_api_token",
    "hub.verify_token",
}

# Contact identifiers keep their tail so operators can still correlate lines.
CONTACT_FIELDS = {
    "from",
    "to",
    "wa_id",
    "phone",
    "customer_phone",
    "customer_email",
    "customeremail",
    "contact_id",
}


def _mask(value: object) -> object:
    if not isinstance(value, str) or len(value) <= 4:
        return "***" if value else value
    return "***" + value[-4:]


def _scrub(data: object) -> object:
    """Recursively scrub secrets and contact identifiers."""

    if isinstance(data, dict):
        scrubbed = {}
        for k, v in data.items():
            key = str(k).lower()
            if key in SENSITIVE_FIELDS:
                scrubbed[k] = "***"
            elif key in CONTACT_FIELDS and not isinstance(v, (dict, list)):
                scrubbed[k] = _mask(v)
            else:
                scrubbed[k] = _scrub(v)
        return scrubbed
    if isinstance(data, list):
        return [_scrub(v) for v in data]
    return data


def _decode_body(body_bytes: bytes) -> object:
    try:
        return _scrub(json.loads(body_bytes))
    except ValueError:
        return body_bytes.decode("utf-8", errors="replace")


# ----------------------------------------------------------------------
# Access log


def _install_access_logging(app: FastAPI, settings: LogSettings | None = None) -> None:
    """Install the per-request access log middleware.

    A generated (or client supplied) X-Request-Id is stored on
    ``request.state`` and echoed in the response headers.
    """

    settings = settings or LogSettings.from_env()
    access_logger = logging.getLogger(ACCESS_LOGGER)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        path = request.url.path
        if path in _QUIET_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        body: object = None
        if settings.request_bodies:
            body_bytes = await request.body()

            async def receive() -> dict:
                return {"type": "http.request", "body": body_bytes, "more_body": False}

            # Downstream handlers read the body again.
            request._receive = receive  # type: ignore[attr-defined]
            if body_bytes:
                body = _decode_body(body_bytes)

        response = await call_next(request)

        client_ip = request.headers.get("X-Forwarded-For")
        if not client_ip and request.client is not None:
            client_ip = request.client.host
        line: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": client_ip,
            "headers": _scrub(dict(request.headers)),
        }
        webhook = _WEBHOOK_PATH.match(path)
        if webhook:
            line["webhook"] = webhook.groupdict()
        if body is not None:
            line["body"] = body

        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(line, default=str))
        return response


def init_logging(app: FastAPI | None = None) -> None:
    """Configure the engine and access loggers, then the middleware."""

    settings = LogSettings.from_env()
    os.makedirs(settings.log_dir, exist_ok=True)

    engine_logger = logging.getLogger(ENGINE_LOGGER)
    if not engine_logger.handlers:
        engine_logger.addHandler(_rotating_handler(settings, "inbox.log"))
    engine_logger.setLevel(settings.level)

    access_logger = logging.getLogger(ACCESS_LOGGER)
    access_logger.handlers.clear()
    access_logger.addHandler(_rotating_handler(settings, "access.log"))
    access_logger.setLevel(settings.level)

    if app is not None:
        cast(Any, app).logger = engine_logger
        _install_access_logging(app, settings)
