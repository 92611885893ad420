"""Tenant notifications.

Delivery of notifications (email digests, push, dashboard badges) belongs to
another service; the engine only enqueues them through a :class:`Notifier`.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import UUID

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    kind: str
    tenant_id: UUID
    config_id: UUID
    recipients: list[str]
    subject: str
    body: str = ""
    conversation_id: UUID | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None: ...


class QueueNotifier:
    """Keep notifications in a bounded in-process queue for a relay to drain."""

    def __init__(self, maxlen: int = 1000) -> None:
        self._queue: deque[Notification] = deque(maxlen=maxlen)

    def notify(self, notification: Notification) -> None:
        logger.info(
            "Queued %s notification for config %s (%s recipients)",
            notification.kind,
            notification.config_id,
            len(notification.recipients),
        )
        self._queue.append(notification)

    def drain(self) -> list[Notification]:
        items = list(self._queue)
        self._queue.clear()
        return items

    def __len__(self) -> int:
        return len(self._queue)
