"""Order-side events that move inventory.

Each handler applies at most one movement per business reference and never
raises: the caller (a Celery task, an HTTP replay) gets an ``EventResult``.
Contention is retried here with exponential backoff; anything that still fails
is written to ``failed_inventory_events`` with its payload so it can be replayed
once the cause is fixed.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import OperationalError

from shared.core import bind_event_context, get_logger
from stockledger.application.ledger import InventoryLedger, MovementReference
from stockledger.application.schemas import OrderItemCancelled, OrderItemCreated, OrderReturnCompleted
from stockledger.core_settings import get_settings
from stockledger.domain.errors import (
    DuplicateMovement,
    InsufficientStock,
    InvalidMovement,
    TransientWriteFailure,
    UnknownEntity,
)
from stockledger.domain.models import FailedInventoryEvent, InventoryMovement
from stockledger.domain.movement_types import MovementType
from stockledger.infrastructure.db import SessionLocal

logger = get_logger(__name__)

ORDER_ITEM_CREATED = "order_item_created"
ORDER_RETURN_COMPLETED = "order_return_completed"
ORDER_ITEM_CANCELLED = "order_item_cancelled"

STATUS_PENDING = "pending"
STATUS_DEFERRED = "deferred"
STATUS_RESOLVED = "resolved"


class EventOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class EventResult:
    outcome: EventOutcome
    movement_id: Optional[int] = None
    failed_event_id: Optional[int] = None
    detail: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "movement_id": self.movement_id,
            "failed_event_id": self.failed_event_id,
            "detail": self.detail,
        }


class _Skip(Exception):
    """Nothing to apply for this event."""


class InventoryEventHandler:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        allow_backorder: Optional[bool] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.INVENTORY_MAX_ATTEMPTS)
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.INVENTORY_RETRY_BACKOFF_SECONDS
        )
        self.sleep = sleep
        self.allow_backorder = allow_backorder
        self._routes = {
            ORDER_ITEM_CREATED: (OrderItemCreated, self.deduct_for_order_item),
            ORDER_RETURN_COMPLETED: (OrderReturnCompleted, self.restock_for_return),
            ORDER_ITEM_CANCELLED: (OrderItemCancelled, self.restore_for_cancellation),
        }

    # -- event handlers -----------------------------------------------------------

    def deduct_for_order_item(self, event: OrderItemCreated, failed_event_id: Optional[int] = None) -> EventResult:
        reference = MovementReference("order_item", event.order_item_id)

        def apply(ledger: InventoryLedger) -> InventoryMovement:
            if ledger.has_applied(reference, MovementType.SALE, event.variant_id):
                raise _Skip("sale already recorded")
            location_id = event.location_id or ledger.default_location_for(event.variant_id)
            if location_id is None:
                raise UnknownEntity("location", None)
            return ledger.apply_movement(
                event.variant_id, location_id, MovementType.SALE, event.quantity, reference=reference,
            )

        return self._run(ORDER_ITEM_CREATED, event, reference, apply, failed_event_id)

    def restock_for_return(self, event: OrderReturnCompleted, failed_event_id: Optional[int] = None) -> EventResult:
        reference = MovementReference("order_return", event.return_id)

        def apply(ledger: InventoryLedger) -> InventoryMovement:
            if ledger.has_applied(reference, MovementType.RETURN, event.variant_id):
                raise _Skip("return already restocked")
            location_id = event.location_id
            if location_id is None and event.order_item_id is not None:
                sale = ledger.find_movement(
                    MovementReference("order_item", event.order_item_id), MovementType.SALE, event.variant_id,
                )
                if sale is not None:
                    location_id = sale.location_id
            if location_id is None:
                location_id = ledger.default_location_for(event.variant_id)
            if location_id is None:
                raise UnknownEntity("location", None)
            return ledger.apply_movement(
                event.variant_id, location_id, MovementType.RETURN, event.quantity, reference=reference,
            )

        return self._run(ORDER_RETURN_COMPLETED, event, reference, apply, failed_event_id)

    def restore_for_cancellation(self, event: OrderItemCancelled, failed_event_id: Optional[int] = None) -> EventResult:
        reference = MovementReference("order_item", event.order_item_id)

        def apply(ledger: InventoryLedger) -> InventoryMovement:
            if ledger.has_applied(reference, MovementType.CANCELLATION, event.variant_id):
                raise _Skip("cancellation already restored")
            sale = ledger.find_movement(reference, MovementType.SALE, event.variant_id)
            if sale is None:
                raise _Skip("no sale recorded for order item")
            sold = abs(sale.quantity_delta)
            quantity = event.quantity or sold
            if quantity > sold:
                raise InvalidMovement(f"Cannot restore {quantity} units, the sale deducted {sold}")
            return ledger.apply_movement(
                event.variant_id, sale.location_id, MovementType.CANCELLATION, quantity, reference=reference,
            )

        return self._run(ORDER_ITEM_CANCELLED, event, reference, apply, failed_event_id)

    def dispatch(self, event_type: str, payload, failed_event_id: Optional[int] = None) -> EventResult:
        """Validate a raw payload and route it to its handler."""
        if event_type not in self._routes:
            raise ValueError(f"Unknown inventory event type: {event_type}")
        schema, handler = self._routes[event_type]
        try:
            event = schema.model_validate(payload)
        except ValidationError as exc:
            return self._fail(event_type, payload, exc, 0, failed_event_id)
        return handler(event, failed_event_id=failed_event_id)

    def replay(self, failed_event_id: int) -> EventResult:
        """Re-run a recorded event; resolves the record when it applies or turns out to be done."""
        db = self.session_factory()
        try:
            record = db.get(FailedInventoryEvent, failed_event_id)
            if record is None:
                raise UnknownEntity("failed_event", failed_event_id)
            if record.status == STATUS_RESOLVED:
                return EventResult(EventOutcome.SKIPPED, failed_event_id=failed_event_id, detail="already resolved")
            event_type, payload = record.event_type, dict(record.payload)
        finally:
            db.close()

        result = self.dispatch(event_type, payload, failed_event_id=failed_event_id)
        if result.outcome in (EventOutcome.APPLIED, EventOutcome.SKIPPED):
            self._resolve(failed_event_id)
        result.failed_event_id = failed_event_id
        return result

    # -- internals ----------------------------------------------------------------

    def _run(
        self,
        event_type: str,
        event: BaseModel,
        reference: MovementReference,
        apply: Callable[[InventoryLedger], InventoryMovement],
        failed_event_id: Optional[int],
    ) -> EventResult:
        payload = event.model_dump()
        with bind_event_context(f"{event_type}:{reference.type}:{reference.id}"):
            last_error = None
            for attempt in range(1, self.max_attempts + 1):
                db = self.session_factory()
                try:
                    movement = apply(InventoryLedger(db, allow_backorder=self.allow_backorder))
                    return EventResult(EventOutcome.APPLIED, movement_id=movement.id)
                except (_Skip, DuplicateMovement) as exc:
                    logger.info(
                        f"Skipping {event_type}: {exc}",
                        extra={"extra_fields": {"event_type": event_type, "payload": payload}},
                    )
                    return EventResult(EventOutcome.SKIPPED, detail=str(exc))
                except (InsufficientStock, UnknownEntity, InvalidMovement) as exc:
                    return self._fail(event_type, payload, exc, attempt, failed_event_id)
                except (TransientWriteFailure, OperationalError) as exc:
                    last_error = exc
                except Exception as exc:
                    logger.exception(f"Unexpected error handling {event_type}")
                    return self._fail(event_type, payload, exc, attempt, failed_event_id)
                finally:
                    db.close()

                if attempt < self.max_attempts:
                    delay = self.backoff_seconds * 2 ** (attempt - 1)
                    logger.warning(
                        f"Transient failure handling {event_type}, retrying in {delay}s",
                        extra={"extra_fields": {"attempt": attempt, "error": str(last_error)}},
                    )
                    self.sleep(delay)

            return self._fail(event_type, payload, last_error, self.max_attempts, failed_event_id)

    def _fail(self, event_type: str, payload, error: Exception, attempts: int, failed_event_id: Optional[int]) -> EventResult:
        stored = payload if isinstance(payload, dict) else {"value": payload}
        db = self.session_factory()
        try:
            record = db.get(FailedInventoryEvent, failed_event_id) if failed_event_id else None
            if record is None:
                record = FailedInventoryEvent(event_type=event_type, payload=stored, attempts=0)
                db.add(record)
            record.error_type = type(error).__name__
            record.error_message = str(error)
            record.attempts = (record.attempts or 0) + attempts
            record.status = STATUS_PENDING
            record.updated_at = datetime.utcnow()
            db.commit()
            record_id = record.id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.error(
            f"Inventory event {event_type} failed",
            extra={"extra_fields": {
                "event_type": event_type,
                "failed_event_id": record_id,
                "error_type": type(error).__name__,
                "error": str(error),
                "attempts": attempts,
                "payload": stored,
            }},
        )
        return EventResult(EventOutcome.FAILED, failed_event_id=record_id, detail=str(error))

    def _resolve(self, failed_event_id: int) -> None:
        db = self.session_factory()
        try:
            record = db.get(FailedInventoryEvent, failed_event_id)
            if record is not None:
                record.status = STATUS_RESOLVED
                record.resolved_at = datetime.utcnow()
                db.commit()
        finally:
            db.close()
        logger.info("Failed inventory event resolved", extra={"extra_fields": {"failed_event_id": failed_event_id}})


def record_deferred_event(session_factory: Callable, event_type: str, payload, error: Exception) -> int:
    """Store an event that could not even be queued."""
    db = session_factory()
    try:
        record = FailedInventoryEvent(
            event_type=event_type,
            payload=payload if isinstance(payload, dict) else {"value": payload},
            error_type=type(error).__name__,
            error_message=str(error),
            attempts=0,
            status=STATUS_DEFERRED,
        )
        db.add(record)
        db.commit()
        return record.id
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
