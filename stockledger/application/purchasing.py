"""Receiving purchase order lines into stock."""

from typing import Iterable, List

from shared.core import get_logger
from stockledger.application.amounts import parse_amount_minor
from stockledger.application.ledger import InventoryLedger, MovementReference
from stockledger.application.schemas import PurchaseReceiptLine, PurchaseReceiptLineResult
from stockledger.domain.errors import DuplicateMovement
from stockledger.domain.movement_types import MovementType

logger = get_logger(__name__)


def receive_purchase_lines(
    ledger: InventoryLedger,
    lines: Iterable[PurchaseReceiptLine],
) -> List[PurchaseReceiptLineResult]:
    """Apply a ``purchase_received`` movement per line.

    Lines are independent: a rejected line does not stop the others. Ledger
    errors other than a duplicate receipt propagate to the caller, which has
    already seen the results of the lines before it committed.
    """
    results = []
    for line in lines:
        reference = MovementReference("purchase_order_item", line.purchase_order_item_id)
        unit_cost_minor = parse_amount_minor(line.unit_cost)
        if unit_cost_minor is None:
            logger.warning(
                "Purchase line rejected: unreadable unit cost",
                extra={"extra_fields": {
                    "purchase_order_item_id": line.purchase_order_item_id,
                    "unit_cost": line.unit_cost,
                }},
            )
            results.append(PurchaseReceiptLineResult(
                purchase_order_item_id=line.purchase_order_item_id,
                status="rejected",
                error=f"Unreadable unit cost: {line.unit_cost!r}",
            ))
            continue

        if ledger.has_applied(reference, MovementType.PURCHASE_RECEIVED, line.variant_id, line.location_id):
            results.append(PurchaseReceiptLineResult(
                purchase_order_item_id=line.purchase_order_item_id,
                status="skipped",
                unit_cost_minor=unit_cost_minor,
            ))
            continue

        note = line.note or f"Purchase receipt, unit cost {unit_cost_minor / 100:.2f}"
        try:
            movement = ledger.apply_movement(
                line.variant_id,
                line.location_id,
                MovementType.PURCHASE_RECEIVED,
                line.quantity,
                reference=reference,
                note=note,
            )
        except DuplicateMovement:
            results.append(PurchaseReceiptLineResult(
                purchase_order_item_id=line.purchase_order_item_id,
                status="skipped",
                unit_cost_minor=unit_cost_minor,
            ))
            continue

        results.append(PurchaseReceiptLineResult(
            purchase_order_item_id=line.purchase_order_item_id,
            status="received",
            unit_cost_minor=unit_cost_minor,
            movement_id=movement.id,
        ))
    return results
