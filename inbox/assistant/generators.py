"""Draft generators used by the AI responder.

``OpenAIDraftGenerator`` talks to the OpenAI chat completions API. When no
API key is configured the app falls back to ``StaticDraftGenerator`` so the
inbox stays usable in development and CI without network access.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Protocol

import openai
from openai import AsyncOpenAI

from ..conversations.schemas import Conversation, Direction, Message, MessagingConfig
from ..errors import AIDraftTimeout, AIQuotaExceeded

logger = logging.getLogger(__name__)


@dataclass
class DraftRequest:
    config: MessagingConfig
    conversation: Conversation
    message: Message
    system_prompt: str
    history: list[Message] = field(default_factory=list)


@dataclass
class Draft:
    text: str
    # ``None`` when the provider does not expose a usable score.
    confidence: float | None = None
    intent: str | None = None


class DraftGenerator(Protocol):
    async def draft(self, request: DraftRequest) -> Draft: ...


class StaticDraftGenerator:
    """Deterministic replies for development and tests.

    ``delay`` simulates provider latency and ``error`` is raised instead of
    answering, which is how tests exercise the timeout and quota paths.
    """

    def __init__(
        self,
        reply: str = "Thanks for your message! A member of our team will follow up shortly.",
        *,
        confidence: float | None = 1.0,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.reply = reply
        self.confidence = confidence
        self.delay = delay
        self.error = error
        self.requests: list[DraftRequest] = []

    async def draft(self, request: DraftRequest) -> Draft:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Draft(text=self.reply, confidence=self.confidence, intent="static")


def _history_messages(request: DraftRequest) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": request.system_prompt}]
    for item in request.history:
        if not item.body:
            continue
        role = "user" if item.direction is Direction.INBOUND else "assistant"
        messages.append({"role": role, "content": item.body})
    if not request.history or request.history[-1].id != request.message.id:
        messages.append({"role": "user", "content": request.message.body})
    return messages


class OpenAIDraftGenerator:
    """Draft replies with OpenAI; confidence comes from token logprobs."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        *,
        model: str = "gpt-4o-mini",
        temperature: float = 0.3,
        max_tokens: int = 400,
    ) -> None:
        self._client = client or AsyncOpenAI()
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def draft(self, request: DraftRequest) -> Draft:
        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                messages=_history_messages(request),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                logprobs=True,
            )
        except openai.RateLimitError as exc:
            raise AIQuotaExceeded(f"OpenAI quota exhausted: {exc}") from exc
        except openai.APITimeoutError as exc:
            raise AIDraftTimeout(f"OpenAI request timed out: {exc}") from exc

        choice = completion.choices[0]
        text = (choice.message.content or "").strip()
        confidence = None
        tokens = getattr(choice.logprobs, "content", None) or []
        if tokens:
            mean = sum(token.logprob for token in tokens) / len(tokens)
            confidence = round(math.exp(mean), 4)
        if getattr(completion, "usage", None):
            logger.debug(
                "Draft for conversation %s used %s tokens",
                request.conversation.id,
                completion.usage.total_tokens,
            )
        return Draft(text=text, confidence=confidence, intent=choice.finish_reason)
