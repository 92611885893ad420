"""Rule-based automations: trigger, conditions, one action.

Only the schemas are loaded here; the conversation repository depends on them,
so the engine and service modules are imported from their own modules.
"""

from . import schemas

__all__ = ["schemas"]
