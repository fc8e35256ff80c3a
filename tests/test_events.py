import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from stockledger.application.events import (
    ORDER_ITEM_CREATED,
    EventOutcome,
    InventoryEventHandler,
)
from stockledger.application.ledger import InventoryLedger
from stockledger.application.schemas import OrderItemCancelled, OrderItemCreated, OrderReturnCompleted
from stockledger.domain.errors import TransientWriteFailure, UnknownEntity
from stockledger.domain.models import FailedInventoryEvent
from stockledger.infrastructure import db


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def handler(engine, sleeps):
    return InventoryEventHandler(
        session_factory=db.SessionLocal,
        max_attempts=3,
        backoff_seconds=5,
        sleep=sleeps.append,
        allow_backorder=False,
    )


def on_hand(variant_id, location_id):
    session = db.SessionLocal()
    try:
        return InventoryLedger(session).stock_level(variant_id, location_id)
    finally:
        session.close()


def failed_events():
    session = db.SessionLocal()
    try:
        return session.execute(select(FailedInventoryEvent).order_by(FailedInventoryEvent.id)).scalars().all()
    finally:
        session.close()


def test_order_item_deducts_once(handler, catalog, stock_up):
    stock_up(catalog.variant, catalog.main, 5)
    event = OrderItemCreated(order_item_id=1, variant_id=catalog.variant, location_id=catalog.main, quantity=2)

    first = handler.deduct_for_order_item(event)
    second = handler.deduct_for_order_item(event)

    assert first.outcome is EventOutcome.APPLIED
    assert first.movement_id is not None
    assert second.outcome is EventOutcome.SKIPPED
    assert on_hand(catalog.variant, catalog.main) == 3


def test_order_item_without_location_uses_best_stocked(handler, catalog, stock_up):
    stock_up(catalog.variant, catalog.main, 1)
    stock_up(catalog.variant, catalog.store, 4)

    result = handler.deduct_for_order_item(
        OrderItemCreated(order_item_id=2, variant_id=catalog.variant, quantity=2)
    )

    assert result.outcome is EventOutcome.APPLIED
    assert on_hand(catalog.variant, catalog.store) == 2
    assert on_hand(catalog.variant, catalog.main) == 1


def test_insufficient_stock_goes_to_remediation(handler, catalog, stock_up, sleeps):
    stock_up(catalog.variant, catalog.main, 1)

    result = handler.deduct_for_order_item(
        OrderItemCreated(order_item_id=3, variant_id=catalog.variant, location_id=catalog.main, quantity=2)
    )

    assert result.outcome is EventOutcome.FAILED
    assert sleeps == []
    (record,) = failed_events()
    assert record.id == result.failed_event_id
    assert record.event_type == ORDER_ITEM_CREATED
    assert record.error_type == "InsufficientStock"
    assert record.payload["order_item_id"] == 3
    assert record.status == "pending"
    assert on_hand(catalog.variant, catalog.main) == 1


def test_unknown_variant_goes_to_remediation(handler, catalog):
    result = handler.deduct_for_order_item(
        OrderItemCreated(order_item_id=4, variant_id=9999, location_id=catalog.main, quantity=1)
    )

    assert result.outcome is EventOutcome.FAILED
    assert failed_events()[0].error_type == "UnknownEntity"


def test_transient_failures_are_retried_with_backoff(handler, catalog, stock_up, sleeps, monkeypatch):
    stock_up(catalog.variant, catalog.main, 5)
    original = InventoryLedger.apply_movement
    calls = []

    def flaky(self, *args, **kwargs):
        calls.append(1)
        if len(calls) < 3:
            raise TransientWriteFailure("database is locked")
        return original(self, *args, **kwargs)

    monkeypatch.setattr(InventoryLedger, "apply_movement", flaky)

    result = handler.deduct_for_order_item(
        OrderItemCreated(order_item_id=5, variant_id=catalog.variant, location_id=catalog.main, quantity=1)
    )

    assert result.outcome is EventOutcome.APPLIED
    assert sleeps == [5, 10]
    assert on_hand(catalog.variant, catalog.main) == 4


def test_exhausted_retries_are_recorded(handler, catalog, stock_up, sleeps, monkeypatch):
    stock_up(catalog.variant, catalog.main, 5)

    def locked(self, *args, **kwargs):
        raise TransientWriteFailure("could not obtain lock")

    monkeypatch.setattr(InventoryLedger, "apply_movement", locked)

    result = handler.deduct_for_order_item(
        OrderItemCreated(order_item_id=6, variant_id=catalog.variant, location_id=catalog.main, quantity=1)
    )

    assert result.outcome is EventOutcome.FAILED
    assert sleeps == [5, 10]
    (record,) = failed_events()
    assert record.error_type == "TransientWriteFailure"
    assert record.attempts == 3


def test_invalid_payload_is_recorded(handler, catalog):
    result = handler.dispatch(ORDER_ITEM_CREATED, {"order_item_id": 7, "variant_id": catalog.variant, "quantity": 0})

    assert result.outcome is EventOutcome.FAILED
    assert failed_events()[0].error_type == "ValidationError"


def test_unknown_event_type_is_refused(handler):
    with pytest.raises(ValueError):
        handler.dispatch("order_shipped", {})


def test_replay_resolves_once_stock_arrives(handler, catalog, stock_up):
    stock_up(catalog.variant, catalog.main, 1)
    failed = handler.deduct_for_order_item(
        OrderItemCreated(order_item_id=8, variant_id=catalog.variant, location_id=catalog.main, quantity=3)
    )

    again = handler.replay(failed.failed_event_id)
    assert again.outcome is EventOutcome.FAILED
    assert failed_events()[0].attempts == 2

    stock_up(catalog.variant, catalog.main, 5)
    replayed = handler.replay(failed.failed_event_id)

    assert replayed.outcome is EventOutcome.APPLIED
    assert on_hand(catalog.variant, catalog.main) == 3
    (record,) = failed_events()
    assert record.status == "resolved"
    assert record.resolved_at is not None

    assert handler.replay(failed.failed_event_id).outcome is EventOutcome.SKIPPED
    assert on_hand(catalog.variant, catalog.main) == 3


def test_replay_of_missing_record(handler):
    with pytest.raises(UnknownEntity):
        handler.replay(12345)


def test_return_restocks_where_the_sale_was_taken(handler, catalog, stock_up):
    stock_up(catalog.variant, catalog.store, 5)
    handler.deduct_for_order_item(
        OrderItemCreated(order_item_id=9, variant_id=catalog.variant, location_id=catalog.store, quantity=2)
    )
    event = OrderReturnCompleted(return_id=1, variant_id=catalog.variant, quantity=2, order_item_id=9)

    first = handler.restock_for_return(event)
    second = handler.restock_for_return(event)

    assert first.outcome is EventOutcome.APPLIED
    assert second.outcome is EventOutcome.SKIPPED
    assert on_hand(catalog.variant, catalog.store) == 5
    assert on_hand(catalog.variant, catalog.main) == 0


def test_cancellation_restores_sale_quantity(handler, catalog, stock_up):
    stock_up(catalog.variant, catalog.store, 5)
    handler.deduct_for_order_item(
        OrderItemCreated(order_item_id=10, variant_id=catalog.variant, location_id=catalog.store, quantity=3)
    )
    event = OrderItemCancelled(order_item_id=10, variant_id=catalog.variant)

    first = handler.restore_for_cancellation(event)
    second = handler.restore_for_cancellation(event)

    assert first.outcome is EventOutcome.APPLIED
    assert second.outcome is EventOutcome.SKIPPED
    assert on_hand(catalog.variant, catalog.store) == 5


def test_cancellation_without_sale_is_skipped(handler, catalog):
    result = handler.restore_for_cancellation(OrderItemCancelled(order_item_id=11, variant_id=catalog.variant))

    assert result.outcome is EventOutcome.SKIPPED
    assert failed_events() == []


def test_cancellation_cannot_restore_more_than_was_sold(handler, catalog, stock_up):
    stock_up(catalog.variant, catalog.main, 5)
    handler.deduct_for_order_item(
        OrderItemCreated(order_item_id=12, variant_id=catalog.variant, location_id=catalog.main, quantity=2)
    )

    result = handler.restore_for_cancellation(
        OrderItemCancelled(order_item_id=12, variant_id=catalog.variant, quantity=50)
    )

    assert result.outcome is EventOutcome.FAILED
    assert failed_events()[0].error_type == "InvalidMovement"
    assert on_hand(catalog.variant, catalog.main) == 3


def test_dropped_connection_during_lookup_is_retried(handler, catalog, stock_up, sleeps, monkeypatch):
    stock_up(catalog.variant, catalog.main, 5)
    original = InventoryLedger.has_applied
    calls = []

    def disconnecting(self, *args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("SELECT", {}, Exception("server closed the connection unexpectedly"))
        return original(self, *args, **kwargs)

    monkeypatch.setattr(InventoryLedger, "has_applied", disconnecting)

    result = handler.deduct_for_order_item(
        OrderItemCreated(order_item_id=13, variant_id=catalog.variant, location_id=catalog.main, quantity=1)
    )

    assert result.outcome is EventOutcome.APPLIED
    assert sleeps == [5]
    assert on_hand(catalog.variant, catalog.main) == 4


def test_persistent_connection_loss_is_recorded(handler, catalog, sleeps, monkeypatch):
    def disconnected(self, *args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("server closed the connection unexpectedly"))

    monkeypatch.setattr(InventoryLedger, "default_location_for", disconnected)

    result = handler.deduct_for_order_item(OrderItemCreated(order_item_id=14, variant_id=catalog.variant, quantity=1))

    assert result.outcome is EventOutcome.FAILED
    assert sleeps == [5, 10]
    (record,) = failed_events()
    assert record.error_type == "OperationalError"
    assert record.attempts == 3


def test_unexpected_errors_are_recorded_not_raised(handler, catalog, sleeps, monkeypatch):
    def broken(self, *args, **kwargs):
        raise IntegrityError("INSERT", {}, Exception("CHECK constraint failed"))

    monkeypatch.setattr(InventoryLedger, "apply_movement", broken)

    result = handler.deduct_for_order_item(
        OrderItemCreated(order_item_id=15, variant_id=catalog.variant, location_id=catalog.main, quantity=1)
    )

    assert result.outcome is EventOutcome.FAILED
    assert sleeps == []
    assert failed_events()[0].error_type == "IntegrityError"
