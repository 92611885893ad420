"""Helpers shared by the messaging API routers."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, Request
from slowapi import Limiter

from ..engine import MessagingEngine
from ..errors import (
    AutomationNotFound,
    ChannelNotEnabled,
    ConfigNotFound,
    ConversationNotFound,
    InvalidSignature,
    InvalidTemplateTransition,
    MalformedPayload,
    QuickReplyNotFound,
    TemplateNotApproved,
    TemplateNotFound,
)

logger = logging.getLogger(__name__)

_NOT_FOUND = (
    ConfigNotFound,
    ConversationNotFound,
    TemplateNotFound,
    AutomationNotFound,
    QuickReplyNotFound,
    ChannelNotEnabled,
)
_CONFLICT = (InvalidTemplateTransition, TemplateNotApproved)


def get_client_ip(request: Request) -> str:
    """Extract a best-effort client IP for rate limiting.

    Prefer ``X-Forwarded-For`` (first hop) if present, otherwise use the
    socket peer address.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=get_client_ip)


def get_engine(request: Request) -> MessagingEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Messaging engine not ready")
    return engine


@contextmanager
def engine_errors() -> Iterator[None]:
    """Translate engine errors into HTTP responses."""

    try:
        yield
    except _NOT_FOUND as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidSignature as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except _CONFLICT as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (MalformedPayload, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
