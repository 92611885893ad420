"""Base abstractions for chat channel adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import requests

from ..conversations.models import DeliveryReceipt, DeliveryResult, InboundMessage, OutboundMessage
from ..conversations.schemas import MessagingConfig
from ..errors import AuthInvalid, MalformedPayload, ProviderUnavailable


class ChannelAdapter(ABC):
    """Abstract base class encapsulating channel-specific behaviour.

    Adapters are stateless translators bound to one :class:`MessagingConfig`
    for credentials. They never touch storage.
    """

    #: Lowercase channel identifier used in routes and configuration.
    channel_name: str

    #: Whether outbound templates need third-party approval on this channel.
    requires_template_approval: bool = False

    #: Timeout in seconds for provider HTTP calls.
    request_timeout: float = 10.0

    def __init__(
        self,
        config: MessagingConfig,
        *,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()

    @abstractmethod
    def normalize_inbound(self, payload: Mapping[str, Any]) -> list[InboundMessage]:
        """Convert a webhook payload into canonical inbound messages.

        Raises :class:`MalformedPayload` when the payload cannot yield a
        stable external message id and contact id.
        """

    @abstractmethod
    def dispatch_outbound(self, message: OutboundMessage) -> DeliveryResult:
        """Deliver ``message`` through the provider.

        Raises :class:`ProviderUnavailable` for transient failures and
        :class:`AuthInvalid` or :class:`MalformedPayload` for permanent ones.
        """

    def parse_status_updates(self, payload: Mapping[str, Any]) -> list[DeliveryReceipt]:
        """Extract delivery receipts carried by the webhook, if any."""

        return []

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """Validate authenticity of the webhook payload.

        Adapters can override this to implement signature checks. The default
        implementation returns ``True``.
        """

        return True

    # ------------------------------------------------------------------
    # Helpers shared by HTTP based adapters

    def _post_json(
        self,
        url: str,
        payload: Mapping[str, Any],
        headers: Mapping[str, str],
    ) -> dict[str, Any]:
        """POST ``payload`` and classify failures into adapter errors."""

        try:
            response = self.session.post(
                url, json=dict(payload), headers=dict(headers), timeout=self.request_timeout
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise ProviderUnavailable(f"{self.channel_name} provider unreachable: {exc}") from exc
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {"raw": response.text}
        if response.status_code in (401, 403):
            raise AuthInvalid(
                f"{self.channel_name} rejected credentials ({response.status_code})"
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(
                f"{self.channel_name} provider error {response.status_code}"
            )
        if response.status_code >= 400:
            detail = (data.get("error") or {}) if isinstance(data, dict) else {}
            message = detail.get("message") if isinstance(detail, dict) else detail
            raise MalformedPayload(
                f"{self.channel_name} refused message ({response.status_code}): {message or data}"
            )
        return data if isinstance(data, dict) else {"data": data}
