"""Automation rule management API router."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Response, status

from ..automations import schemas
from ..engine import MessagingEngine
from .common import engine_errors, get_engine

router = APIRouter(
    prefix="/api/messaging/configs/{config_id}/automations", tags=["automations"]
)


@router.get("", response_model=list[schemas.Automation])
def list_automations(
    config_id: UUID, engine: MessagingEngine = Depends(get_engine)
) -> list[schemas.Automation]:
    with engine_errors():
        config = engine.get_config(config_id)
        return engine.automations.list_automations(config.id)


@router.post(
    "", response_model=schemas.Automation, status_code=status.HTTP_201_CREATED
)
def create_automation(
    config_id: UUID,
    payload: schemas.AutomationCreate,
    engine: MessagingEngine = Depends(get_engine),
) -> schemas.Automation:
    with engine_errors():
        config = engine.get_config(config_id)
        return engine.automations.create(config, payload)


@router.get("/{automation_id}", response_model=schemas.Automation)
def get_automation(
    config_id: UUID,
    automation_id: UUID,
    engine: MessagingEngine = Depends(get_engine),
) -> schemas.Automation:
    with engine_errors():
        config = engine.get_config(config_id)
        return engine.automations.get_automation(config.id, automation_id)


@router.patch("/{automation_id}", response_model=schemas.Automation)
def update_automation(
    config_id: UUID,
    automation_id: UUID,
    payload: schemas.AutomationUpdate,
    engine: MessagingEngine = Depends(get_engine),
) -> schemas.Automation:
    with engine_errors():
        config = engine.get_config(config_id)
        return engine.automations.update(config.id, automation_id, payload)


@router.post("/{automation_id}/toggle", response_model=schemas.Automation)
def toggle_automation(
    config_id: UUID,
    automation_id: UUID,
    engine: MessagingEngine = Depends(get_engine),
) -> schemas.Automation:
    """Flip ``is_active``. Only events evaluated afterwards are affected."""

    with engine_errors():
        config = engine.get_config(config_id)
        return engine.automations.toggle(config.id, automation_id)


@router.delete("/{automation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_automation(
    config_id: UUID,
    automation_id: UUID,
    engine: MessagingEngine = Depends(get_engine),
) -> Response:
    with engine_errors():
        config = engine.get_config(config_id)
        engine.automations.delete(config.id, automation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
