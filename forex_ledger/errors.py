"""
Engine Error Types

Every error raised by the engine derives from ForexError, itself a ValueError,
so callers that only catch ValueError keep working.
"""

from decimal import Decimal
from typing import Optional


class ForexError(ValueError):
    """Base class for all engine errors"""


class InsufficientFunds(ForexError):
    """A debit, sale, cession or replenishment exceeds the available balance"""

    def __init__(self, source: str, available: Decimal, requested: Decimal,
                 message: Optional[str] = None):
        self.source = source
        self.available = available
        self.requested = requested
        super().__init__(
            message or
            f"Insufficient funds in {source}: available {available}, requested {requested}"
        )


class InvalidOperation(ForexError):
    """Operation not allowed in the current state (pool mutation, skipped stage, wrong status)"""


class NotFound(ForexError):
    """Unknown account, till, transaction, expense or settlement"""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class ValidationError(ForexError):
    """Missing or malformed mandatory input"""


class InvalidSelection(ValidationError):
    """No funding source selected, or the source cannot fund the requested currency"""


class PermissionDenied(ForexError):
    """Caller's role is not allowed to perform the operation"""
