"""Messaging config (tenant channel onboarding) API router."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Body, Depends, status

from ..conversations import schemas as convo_schemas
from ..engine import MessagingEngine
from .common import engine_errors, get_engine

router = APIRouter(prefix="/api/messaging/configs", tags=["configs"])

# Provider credentials are write-only over the API.
_SECRET_FIELDS = {"wa_access_token", "wa_webhook_secret", "email_api_token"}


@router.post(
    "",
    response_model=convo_schemas.MessagingConfig,
    response_model_exclude=_SECRET_FIELDS,
    status_code=status.HTTP_201_CREATED,
)
def create_config(
    payload: convo_schemas.MessagingConfig,
    engine: MessagingEngine = Depends(get_engine),
) -> convo_schemas.MessagingConfig:
    return engine.create_config(payload)


@router.get(
    "/{config_id}",
    response_model=convo_schemas.MessagingConfig,
    response_model_exclude=_SECRET_FIELDS,
)
def get_config(
    config_id: UUID, engine: MessagingEngine = Depends(get_engine)
) -> convo_schemas.MessagingConfig:
    with engine_errors():
        return engine.get_config(config_id)


@router.patch(
    "/{config_id}",
    response_model=convo_schemas.MessagingConfig,
    response_model_exclude=_SECRET_FIELDS,
)
def update_config(
    config_id: UUID,
    changes: dict[str, Any] = Body(...),
    engine: MessagingEngine = Depends(get_engine),
) -> convo_schemas.MessagingConfig:
    """Apply a partial update; ``id`` and ``tenant_id`` are immutable."""

    with engine_errors():
        return engine.update_config(config_id, changes)


@router.delete(
    "/{config_id}",
    response_model=convo_schemas.MessagingConfig,
    response_model_exclude=_SECRET_FIELDS,
)
def deactivate_config(
    config_id: UUID, engine: MessagingEngine = Depends(get_engine)
) -> convo_schemas.MessagingConfig:
    with engine_errors():
        return engine.deactivate_config(config_id)
