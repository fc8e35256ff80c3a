"""Inventory error taxonomy.

Amount parsing has no exception here: a failed parse is the ``None`` result of
``parse_amount``.
"""

from typing import Optional


class InventoryError(Exception):
    """Base class for ledger failures."""


class InvalidMovement(InventoryError):
    """Quantity or direction do not describe a valid movement."""


class UnknownEntity(InventoryError):
    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InsufficientStock(InventoryError):
    def __init__(self, variant_id: int, location_id: int, available: int, requested: int):
        self.variant_id = variant_id
        self.location_id = location_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for variant {variant_id} at location {location_id}: "
            f"available {available}, requested {requested}"
        )


class DuplicateMovement(InventoryError):
    """A movement for the same reference and type was already recorded."""

    def __init__(self, reference_type: Optional[str], reference_id: Optional[str], movement_type: str):
        self.reference_type = reference_type
        self.reference_id = reference_id
        self.movement_type = movement_type
        super().__init__(f"{movement_type} already applied for {reference_type}:{reference_id}")


class TransientWriteFailure(InventoryError):
    """Lock timeout or storage contention; safe to retry."""
