"""Outbound template management and provider approval webhook."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status

from ..conversations import schemas as convo_schemas
from ..engine import MessagingEngine
from ..errors import ChannelDispatchFailure
from .common import engine_errors, get_engine

router = APIRouter(tags=["templates"])

_TEMPLATES = "/api/messaging/configs/{config_id}/templates"


@router.get(_TEMPLATES, response_model=list[convo_schemas.Template])
def list_templates(
    config_id: UUID, engine: MessagingEngine = Depends(get_engine)
) -> list[convo_schemas.Template]:
    with engine_errors():
        config = engine.get_config(config_id)
        return engine.templates.list_templates(config.id)


@router.post(
    _TEMPLATES,
    response_model=convo_schemas.Template,
    status_code=status.HTTP_201_CREATED,
)
def create_template(
    config_id: UUID,
    payload: convo_schemas.TemplateCreate,
    engine: MessagingEngine = Depends(get_engine),
) -> convo_schemas.Template:
    with engine_errors():
        config = engine.get_config(config_id)
        return engine.templates.create(config, payload)


@router.get(_TEMPLATES + "/{template_id}", response_model=convo_schemas.Template)
def get_template(
    config_id: UUID,
    template_id: UUID,
    engine: MessagingEngine = Depends(get_engine),
) -> convo_schemas.Template:
    with engine_errors():
        config = engine.get_config(config_id)
        return engine.templates.get_template(config.id, template_id)


@router.patch(_TEMPLATES + "/{template_id}", response_model=convo_schemas.Template)
def update_template(
    config_id: UUID,
    template_id: UUID,
    payload: convo_schemas.TemplateUpdate,
    engine: MessagingEngine = Depends(get_engine),
) -> convo_schemas.Template:
    """Edit content. Approved or pending templates drop back to ``draft``."""

    with engine_errors():
        config = engine.get_config(config_id)
        return engine.templates.update(config.id, template_id, payload)


@router.delete(_TEMPLATES + "/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_template(
    config_id: UUID,
    template_id: UUID,
    engine: MessagingEngine = Depends(get_engine),
) -> Response:
    with engine_errors():
        config = engine.get_config(config_id)
        engine.templates.delete(config.id, template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(_TEMPLATES + "/{template_id}/submit", response_model=convo_schemas.Template)
def submit_template(
    config_id: UUID,
    template_id: UUID,
    engine: MessagingEngine = Depends(get_engine),
) -> convo_schemas.Template:
    with engine_errors():
        config = engine.get_config(config_id)
        return engine.templates.submit(config.id, template_id)


@router.post(
    "/api/messaging/templates/{template_id}/approval",
    response_model=convo_schemas.Template,
)
def record_approval(
    template_id: UUID,
    payload: convo_schemas.ApprovalResult,
    engine: MessagingEngine = Depends(get_engine),
) -> convo_schemas.Template:
    """Provider callback carrying an approval decision for a template."""

    with engine_errors():
        return engine.templates.apply_approval_result(
            template_id,
            payload.status,
            payload.reason,
            provider_template_id=payload.provider_template_id,
        )


@router.post(
    "/api/messaging/configs/{config_id}/conversations/{conversation_id}/template",
    response_model=convo_schemas.Message,
)
async def send_template(
    config_id: UUID,
    conversation_id: UUID,
    payload: convo_schemas.TemplateSendRequest,
    engine: MessagingEngine = Depends(get_engine),
) -> convo_schemas.Message:
    with engine_errors():
        config = engine.get_config(config_id)
        try:
            return await engine.send_template(
                config, conversation_id, payload.template_id, payload.params
            )
        except ChannelDispatchFailure as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
