"""Error taxonomy shared by the messaging engine.

Routers translate these into HTTP responses; the engine itself decides which
ones are recovered locally (draft timeouts, automation action failures) and
which ones propagate to the caller.
"""

from __future__ import annotations

from uuid import UUID


class MessagingError(RuntimeError):
    """Base class for all engine errors."""


class ConfigNotFound(MessagingError):
    """Raised when a messaging config is unknown or deactivated."""


class ConversationNotFound(MessagingError):
    """Raised when a conversation is unknown or belongs to another config."""


class ChannelNotEnabled(MessagingError):
    """Raised when a config receives traffic for a channel it did not enable."""


class DuplicateMessage(MessagingError):
    """Raised by stores when ``(channel, external_message_id)`` already exists.

    The router treats this as an idempotent no-op rather than a failure.
    """


class AdapterError(MessagingError):
    """Base class for errors classified by channel adapters."""


class MalformedPayload(AdapterError):
    """Payload cannot be interpreted. Dropped and logged, never retried."""


class ProviderUnavailable(AdapterError):
    """Transient provider failure, eligible for retry with backoff."""


class AuthInvalid(AdapterError):
    """Provider rejected the credentials. Fatal for the config."""


class InvalidSignature(MessagingError):
    """Webhook body does not match the provider signature header."""


class ChannelDispatchFailure(MessagingError):
    """Outbound dispatch failed after classification and retries.

    ``message_id`` points at the stored outbound message, which is kept with
    ``status=failed`` so it can be retried from the inbox.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        message_id: UUID | None = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.message_id = message_id


class TemplateNotFound(MessagingError):
    """Raised when a template id is unknown for the config."""


class TemplateNotApproved(MessagingError):
    """Raised when a template is used before third-party approval."""


class InvalidTemplateTransition(MessagingError):
    """Raised when an approval state change is not allowed."""


class AutomationNotFound(MessagingError):
    """Raised when an automation id is unknown for the config."""


class AutomationActionFailure(MessagingError):
    """Wraps an error raised while executing an automation action."""


class AIQuotaExceeded(MessagingError):
    """The AI provider refused the request because the quota is exhausted."""


class AIDraftTimeout(MessagingError):
    """Drafting exceeded its time budget. Recovered by leaving it to a human."""


class QuickReplyNotFound(MessagingError):
    """Raised when a shortcut is not registered for the tenant."""
