"""Outbound message templates and their approval workflow."""

from .service import TemplateManager

__all__ = ["TemplateManager"]
