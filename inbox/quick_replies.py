"""Agent shortcuts expanding to canned reply text."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List
from uuid import UUID

from .conversations.repository import MessagingRepository
from .conversations.schemas import QuickReply, QuickReplyUpsert
from .errors import QuickReplyNotFound

logger = logging.getLogger(__name__)


class QuickReplyRegistry:
    """Per-tenant lookup table. Shortcuts are case-sensitive keys and writes
    are last-writer-wins."""

    def __init__(self, repository: MessagingRepository) -> None:
        self._repository = repository

    def list(self, tenant_id: UUID) -> List[QuickReply]:
        return self._repository.list_quick_replies(tenant_id)

    def get(self, tenant_id: UUID, shortcut: str) -> QuickReply:
        reply = self._repository.get_quick_reply(tenant_id, shortcut)
        if reply is None:
            raise QuickReplyNotFound(f"Quick reply '{shortcut}' not found")
        return reply

    def upsert(self, tenant_id: UUID, shortcut: str, payload: QuickReplyUpsert) -> QuickReply:
        now = datetime.now(timezone.utc)
        existing = self._repository.get_quick_reply(tenant_id, shortcut)
        reply = QuickReply(
            tenant_id=tenant_id,
            shortcut=shortcut,
            title=payload.title,
            body=payload.body,
            category=payload.category,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        return self._repository.save_quick_reply(reply)

    def delete(self, tenant_id: UUID, shortcut: str) -> None:
        if not self._repository.delete_quick_reply(tenant_id, shortcut):
            raise QuickReplyNotFound(f"Quick reply '{shortcut}' not found")

    def expand(self, tenant_id: UUID, shortcut: str) -> str:
        return self.get(tenant_id, shortcut).body
