"""
Typed exceptions for the warehouse task engine.

Every error carries a machine-readable ``code`` so the HTTP layer and callers
can branch on type instead of message text.

    WmsError (base)
    |
    +-- NotFound                 task / pick item / count / count item id unresolved
    +-- InvalidStateTransition   e.g. completing an already-terminal task
    +-- InsufficientInventory    pick beyond allocation, delta below zero
    +-- ValidationError          malformed quantities or arguments
"""

from __future__ import annotations


class WmsError(Exception):
    code: str = "WMS_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(WmsError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidStateTransition(WmsError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, entity: str, entity_id: str, current: str, action: str):
        super().__init__(f"Cannot {action} {entity} {entity_id} in status '{current}'")
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.action = action


class InsufficientInventory(WmsError):
    code = "INSUFFICIENT_INVENTORY"

    def __init__(self, message: str, *, requested: float | None = None, available: float | None = None):
        super().__init__(message)
        self.requested = requested
        self.available = available


class ValidationError(WmsError):
    code = "VALIDATION_ERROR"
