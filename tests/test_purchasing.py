from stockledger.application.purchasing import receive_purchase_lines
from stockledger.application.schemas import PurchaseReceiptLine


def line(catalog, purchase_order_item_id, quantity, unit_cost, **overrides):
    values = dict(
        purchase_order_item_id=purchase_order_item_id,
        variant_id=catalog.variant,
        location_id=catalog.main,
        quantity=quantity,
        unit_cost=unit_cost,
    )
    values.update(overrides)
    return PurchaseReceiptLine(**values)


def test_receipt_lines_add_stock(ledger, catalog):
    results = receive_purchase_lines(ledger, [
        line(catalog, 1, 10, "3.077,08"),
        line(catalog, 2, 5, "249,00", location_id=catalog.store),
    ])

    assert [r.status for r in results] == ["received", "received"]
    assert [r.unit_cost_minor for r in results] == [307708, 24900]
    assert ledger.stock_level(catalog.variant, catalog.main) == 10
    assert ledger.stock_level(catalog.variant, catalog.store) == 5
    movement = ledger.movements_for(variant_id=catalog.variant, location_id=catalog.main)[0]
    assert movement.type == "purchase_received"
    assert (movement.reference_type, movement.reference_id) == ("purchase_order_item", "1")


def test_unreadable_cost_rejects_only_that_line(ledger, catalog):
    results = receive_purchase_lines(ledger, [
        line(catalog, 3, 4, "abc"),
        line(catalog, 4, 2, "1,234.50"),
    ])

    assert results[0].status == "rejected"
    assert results[0].movement_id is None
    assert "abc" in results[0].error
    assert results[1].status == "received"
    assert ledger.stock_level(catalog.variant, catalog.main) == 2


def test_receiving_twice_is_skipped(ledger, catalog):
    receive_purchase_lines(ledger, [line(catalog, 5, 3, "10")])

    results = receive_purchase_lines(ledger, [line(catalog, 5, 3, "10")])

    assert results[0].status == "skipped"
    assert ledger.stock_level(catalog.variant, catalog.main) == 3
