"""Automation management: CRUD and activation toggles.

Rules are validated by the schemas when they are saved, and toggles only
affect events evaluated afterwards; nothing is re-evaluated retroactively.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List
from uuid import UUID

from ..conversations.repository import MessagingRepository
from ..conversations.schemas import MessagingConfig
from ..errors import AutomationNotFound
from .schemas import Automation, AutomationCreate, AutomationUpdate

logger = logging.getLogger(__name__)


class AutomationService:
    def __init__(self, repository: MessagingRepository) -> None:
        self._repository = repository

    def list_automations(self, config_id: UUID) -> List[Automation]:
        return self._repository.list_automations(config_id)

    def get_automation(self, config_id: UUID, automation_id: UUID) -> Automation:
        automation = self._repository.get_automation(config_id, automation_id)
        if automation is None:
            raise AutomationNotFound(f"Automation {automation_id} not found")
        return automation

    def create(self, config: MessagingConfig, payload: AutomationCreate) -> Automation:
        automation = Automation(
            config_id=config.id,
            tenant_id=config.tenant_id,
            **payload.model_dump(),
        )
        logger.info(
            "Created %s automation %s for config %s",
            automation.trigger_type.value,
            automation.id,
            config.id,
        )
        return self._repository.save_automation(automation)

    def update(
        self, config_id: UUID, automation_id: UUID, payload: AutomationUpdate
    ) -> Automation:
        automation = self.get_automation(config_id, automation_id)
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            return automation
        # Re-validate the merged record so variants stay consistent.
        merged = Automation.model_validate(
            {**automation.model_dump(), **changes, "updated_at": datetime.now(timezone.utc)}
        )
        return self._repository.save_automation(merged)

    def set_active(self, config_id: UUID, automation_id: UUID, active: bool) -> Automation:
        automation = self.get_automation(config_id, automation_id)
        automation.is_active = active
        automation.updated_at = datetime.now(timezone.utc)
        logger.info(
            "Automation %s %s", automation_id, "enabled" if active else "disabled"
        )
        return self._repository.save_automation(automation)

    def toggle(self, config_id: UUID, automation_id: UUID) -> Automation:
        automation = self.get_automation(config_id, automation_id)
        return self.set_active(config_id, automation_id, not automation.is_active)

    def delete(self, config_id: UUID, automation_id: UUID) -> None:
        if not self._repository.delete_automation(config_id, automation_id):
            raise AutomationNotFound(f"Automation {automation_id} not found")
