"""Outbound template lifecycle and approval gating.

State machine::

    draft --submit--> pending --approval webhook--> approved | rejected
    rejected --submit--> pending          (rejection history is kept)
    approved --approval webhook--> rejected   (approval revoked)
    approved/pending --edit--> draft

Approval results arrive from the provider and are recorded verbatim.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from ..conversations.repository import MessagingRepository
from ..conversations.schemas import (
    ApprovalStatus,
    Channel,
    MessagingConfig,
    RejectionRecord,
    Template,
    TemplateCreate,
    TemplateUpdate,
)
from ..errors import InvalidTemplateTransition, TemplateNotApproved, TemplateNotFound

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*(\d+)\s*\}\}")

# Channels whose provider only delivers pre-approved templates.
APPROVAL_REQUIRED_CHANNELS = frozenset({Channel.WHATSAPP})


class TemplateManager:
    """Tracks templates and enforces that only approved ones are sendable."""

    def __init__(self, repository: MessagingRepository) -> None:
        self._repository = repository

    # ------------------------------------------------------------------
    # CRUD

    def list_templates(self, config_id: UUID) -> List[Template]:
        return self._repository.list_templates(config_id)

    def get_template(self, config_id: UUID, template_id: UUID) -> Template:
        template = self._repository.get_template(config_id, template_id)
        if template is None:
            raise TemplateNotFound(f"Template {template_id} not found")
        return template

    def create(self, config: MessagingConfig, payload: TemplateCreate) -> Template:
        template = Template(
            config_id=config.id,
            tenant_id=config.tenant_id,
            **payload.model_dump(),
        )
        return self._repository.save_template(template)

    def update(self, config_id: UUID, template_id: UUID, payload: TemplateUpdate) -> Template:
        template = self.get_template(config_id, template_id)
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            return template
        for key, value in changes.items():
            setattr(template, key, value)
        # Approved or pending content is no longer what the provider reviewed.
        if template.approval_status in (ApprovalStatus.APPROVED, ApprovalStatus.PENDING):
            template.approval_status = ApprovalStatus.DRAFT
        template.updated_at = datetime.now(timezone.utc)
        return self._repository.save_template(template)

    def delete(self, config_id: UUID, template_id: UUID) -> None:
        if not self._repository.delete_template(config_id, template_id):
            raise TemplateNotFound(f"Template {template_id} not found")

    # ------------------------------------------------------------------
    # Approval lifecycle

    def submit(self, config_id: UUID, template_id: UUID) -> Template:
        template = self.get_template(config_id, template_id)
        if template.approval_status not in (ApprovalStatus.DRAFT, ApprovalStatus.REJECTED):
            raise InvalidTemplateTransition(
                f"Cannot submit template in status {template.approval_status.value}"
            )
        template.approval_status = ApprovalStatus.PENDING
        template.updated_at = datetime.now(timezone.utc)
        logger.info("Template %s submitted for approval", template.id)
        return self._repository.save_template(template)

    def apply_approval_result(
        self,
        template_id: UUID,
        status: ApprovalStatus,
        reason: Optional[str] = None,
        *,
        config_id: Optional[UUID] = None,
        provider_template_id: Optional[str] = None,
    ) -> Template:
        """Record a provider decision verbatim.

        ``config_id`` scopes the lookup when the caller knows the owner; the
        provider webhook only carries the template id.
        """

        if config_id is not None:
            template = self.get_template(config_id, template_id)
        else:
            template = self._repository.find_template(template_id)
            if template is None:
                raise TemplateNotFound(f"Template {template_id} not found")
        current = template.approval_status
        allowed = {
            ApprovalStatus.PENDING: {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED},
            ApprovalStatus.APPROVED: {ApprovalStatus.REJECTED},
        }
        if status not in allowed.get(current, set()):
            raise InvalidTemplateTransition(
                f"Approval result {status.value} not valid for template in status {current.value}"
            )
        template.approval_status = status
        if provider_template_id:
            template.provider_template_id = provider_template_id
        if status is ApprovalStatus.REJECTED:
            template.rejection_reason = reason
            template.rejection_history.append(
                RejectionRecord(status=status, reason=reason)
            )
            logger.warning("Template %s rejected: %s", template.id, reason)
        else:
            template.rejection_reason = None
            logger.info("Template %s approved", template.id)
        template.updated_at = datetime.now(timezone.utc)
        return self._repository.save_template(template)

    # ------------------------------------------------------------------
    # Sending

    @staticmethod
    def requires_approval(channel: Channel) -> bool:
        return Channel(channel) in APPROVAL_REQUIRED_CHANNELS

    @staticmethod
    def ensure_approved(template: Template) -> Template:
        if template.approval_status is not ApprovalStatus.APPROVED:
            raise TemplateNotApproved(
                f"Template '{template.name}' is {template.approval_status.value}, not approved"
            )
        return template

    def ensure_sendable(self, template: Template, channel: Channel) -> Template:
        """Only channels whose provider requires pre-approval are gated."""

        if self.requires_approval(channel):
            return self.ensure_approved(template)
        return template

    @staticmethod
    def render(template: Template, params: Sequence[str] = ()) -> str:
        """Substitute ``{{n}}`` placeholders (1-based) and join the sections."""

        def _replace(match: re.Match[str]) -> str:
            index = int(match.group(1)) - 1
            if 0 <= index < len(params):
                return str(params[index])
            return match.group(0)

        sections = [template.header_text, template.body_text, template.footer_text]
        rendered = [_PLACEHOLDER.sub(_replace, section) for section in sections if section]
        return "\n\n".join(rendered)

    def record_sent(self, config_id: UUID, template_id: UUID) -> Template:
        template = self.get_template(config_id, template_id)
        template.times_sent += 1
        template.last_sent_at = datetime.now(timezone.utc)
        return self._repository.save_template(template)
