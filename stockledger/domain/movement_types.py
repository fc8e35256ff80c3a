from enum import Enum
from typing import Optional

from .errors import InvalidMovement


class MovementType(str, Enum):
    SALE = "sale"
    RETURN = "return"
    CANCELLATION = "cancellation"
    ADJUSTMENT = "adjustment"
    PURCHASE_RECEIVED = "purchase_received"
    DAMAGED = "damaged"
    TRANSFER = "transfer"

    @property
    def label(self) -> str:
        return MOVEMENT_LABELS[self]


class MovementDirection(str, Enum):
    IN = "in"
    OUT = "out"


MOVEMENT_LABELS = {
    MovementType.SALE: "Sale (Order Created)",
    MovementType.RETURN: "Return (Completed)",
    MovementType.CANCELLATION: "Cancellation",
    MovementType.ADJUSTMENT: "Manual Adjustment",
    MovementType.PURCHASE_RECEIVED: "Purchase Received",
    MovementType.DAMAGED: "Damaged",
    MovementType.TRANSFER: "Transfer Between Locations",
}

# Direction implied by the type; neutral types take it from the caller
MOVEMENT_POLICY = {
    MovementType.SALE: MovementDirection.OUT,
    MovementType.DAMAGED: MovementDirection.OUT,
    MovementType.RETURN: MovementDirection.IN,
    MovementType.CANCELLATION: MovementDirection.IN,
    MovementType.PURCHASE_RECEIVED: MovementDirection.IN,
    MovementType.ADJUSTMENT: None,
    MovementType.TRANSFER: None,
}


def is_deduction(movement_type: MovementType) -> bool:
    return MOVEMENT_POLICY[MovementType(movement_type)] is MovementDirection.OUT


def is_addition(movement_type: MovementType) -> bool:
    return MOVEMENT_POLICY[MovementType(movement_type)] is MovementDirection.IN


def is_neutral(movement_type: MovementType) -> bool:
    return MOVEMENT_POLICY[MovementType(movement_type)] is None


def implied_direction(movement_type: MovementType) -> Optional[MovementDirection]:
    if is_deduction(movement_type):
        return MovementDirection.OUT
    if is_addition(movement_type):
        return MovementDirection.IN
    return None


def signed_delta(
    movement_type: MovementType,
    quantity: int,
    direction: Optional[MovementDirection] = None,
) -> int:
    """Return the signed on-hand change for a movement.

    ``quantity`` is always a positive magnitude. Deduction and addition types
    carry their own direction; ``adjustment`` and ``transfer`` need one from the
    caller.
    """
    movement_type = MovementType(movement_type)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidMovement(f"Quantity must be a positive integer, got {quantity!r}")

    if direction is not None:
        direction = MovementDirection(direction)
    if is_neutral(movement_type):
        if direction is None:
            raise InvalidMovement(f"{movement_type.value} movements need an explicit direction")
        resolved = direction
    else:
        implied = implied_direction(movement_type)
        if direction is not None and direction is not implied:
            raise InvalidMovement(
                f"{movement_type.value} movements are always '{implied.value}', got '{direction.value}'"
            )
        resolved = implied

    return quantity if resolved is MovementDirection.IN else -quantity
