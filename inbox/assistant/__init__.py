"""AI assistant replies for messaging conversations."""

from .generators import Draft, DraftGenerator, DraftRequest, OpenAIDraftGenerator, StaticDraftGenerator
from .responder import AIResponder

__all__ = [
    "AIResponder",
    "Draft",
    "DraftGenerator",
    "DraftRequest",
    "OpenAIDraftGenerator",
    "StaticDraftGenerator",
]
