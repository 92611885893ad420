"""System prompts for drafted replies."""

from __future__ import annotations

from collections.abc import Mapping

from ..conversations.schemas import Channel, MessagingConfig


class ReplyPromptBuilder:
    """Compose the system prompt from the tenant persona and channel rules."""

    _BASE_PROMPT = (
        "You are the customer support assistant for {business}. Answer the "
        "customer's latest message using the conversation so far. Never invent "
        "prices, order details or policies you were not told about; if you are "
        "unsure, say that a team member will follow up."
    )

    _NO_SUPPORT_RULE = (
        "Do not troubleshoot order, payment or account problems. Acknowledge "
        "the request and say that a team member will follow up."
    )

    _CHANNEL_RULES: Mapping[Channel, str] = {
        Channel.WEB_CHAT: "Keep replies short and conversational, two or three sentences at most.",
        Channel.WHATSAPP: (
            "Reply in plain text suitable for WhatsApp: no markdown headings, "
            "at most one short paragraph, emojis only when the customer uses them."
        ),
        Channel.EMAIL: (
            "Write a complete email body with a greeting and a sign-off using the "
            "business name. Do not include a subject line."
        ),
    }

    def __init__(self, extra_rules: Mapping[Channel, str] | None = None):
        self._rules = dict(self._CHANNEL_RULES)
        if extra_rules:
            self._rules.update(extra_rules)

    def build(
        self,
        config: MessagingConfig,
        channel: Channel,
        language: str | None = None,
    ) -> str:
        business = config.business_name or "this business"
        parts = [self._BASE_PROMPT.format(business=business)]
        if config.ai_persona:
            parts.append(f"Persona: {config.ai_persona.strip()}")
        if not config.ai_handle_support:
            parts.append(self._NO_SUPPORT_RULE)
        rule = self._rules.get(channel)
        if rule:
            parts.append(rule)
        parts.append(
            f"Reply in {language}."
            if language
            else "Reply in the same language as the customer."
        )
        return "\n\n".join(parts)
