"""Outbound dispatch with bounded exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ..conversations.models import DeliveryResult, OutboundMessage
from ..errors import AuthInvalid, ChannelDispatchFailure, MalformedPayload, ProviderUnavailable
from .base import ChannelAdapter

logger = logging.getLogger(__name__)


class Dispatcher:
    """Call adapters off the event loop and retry transient failures.

    The delay before attempt ``n + 1`` is ``backoff_seconds * 2 ** (n - 1)``.
    Permanent failures (:class:`AuthInvalid`, :class:`MalformedPayload`) are
    never retried.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def dispatch(
        self, adapter: ChannelAdapter, message: OutboundMessage
    ) -> DeliveryResult:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await asyncio.to_thread(adapter.dispatch_outbound, message)
            except ProviderUnavailable as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "Dispatch via %s failed after %s attempts: %s",
                        adapter.channel_name,
                        attempt,
                        exc,
                    )
                    raise ChannelDispatchFailure(str(exc), transient=True) from exc
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Transient %s dispatch failure (attempt %s/%s), retrying in %.2fs: %s",
                    adapter.channel_name,
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                continue
            except (AuthInvalid, MalformedPayload) as exc:
                logger.error("Permanent %s dispatch failure: %s", adapter.channel_name, exc)
                raise ChannelDispatchFailure(str(exc), transient=False) from exc
            result.attempts = attempt
            return result
