"""Inventory ledger.

Every change to ``StockLevel.on_hand`` goes through ``InventoryLedger``: the
quantity update and its ``InventoryMovement`` row commit in one transaction or
not at all, so a location's on-hand always equals the sum of its movement deltas.

Writers on the same (variant, location) are serialized by the row lock the
conditional ``UPDATE ... RETURNING`` takes; the no-negative guard lives in that
same statement, so there is no read-then-write window to lose updates in.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from shared.core import get_logger
from stockledger.core_settings import get_settings
from stockledger.domain.errors import (
    DuplicateMovement,
    InsufficientStock,
    InvalidMovement,
    TransientWriteFailure,
    UnknownEntity,
)
from stockledger.domain.models import InventoryMovement, Location, ProductVariant, StockLevel
from stockledger.domain.movement_types import MovementDirection, MovementType, signed_delta

logger = get_logger(__name__)

stock_tbl = StockLevel.__table__

_INSERT_IGNORING_CONFLICTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


@dataclass(frozen=True)
class MovementReference:
    """Business event a movement belongs to, e.g. ``("order_item", "42")``."""
    type: str
    id: str

    def __post_init__(self):
        object.__setattr__(self, "id", str(self.id))


@dataclass(frozen=True)
class _Entry:
    location_id: int
    movement_type: MovementType
    delta: int


class InventoryLedger:
    def __init__(self, db: Session, allow_backorder: Optional[bool] = None):
        self.db = db
        if allow_backorder is None:
            allow_backorder = get_settings().INVENTORY_ALLOW_BACKORDER
        self.allow_backorder = allow_backorder

    # -- writes -----------------------------------------------------------------

    def apply_movement(
        self,
        variant_id: int,
        location_id: int,
        movement_type: MovementType,
        quantity: int,
        reference: Optional[MovementReference] = None,
        direction: Optional[MovementDirection] = None,
        note: Optional[str] = None,
    ) -> InventoryMovement:
        """Apply one stock movement and return its audit row.

        Raises InvalidMovement, UnknownEntity, InsufficientStock,
        DuplicateMovement or TransientWriteFailure; on any of them neither the
        stock level nor the movement is written.
        """
        movement_type = MovementType(movement_type)
        delta = signed_delta(movement_type, quantity, direction)
        self._require_variant(variant_id)
        self._require_location(location_id)

        entry = _Entry(location_id=location_id, movement_type=movement_type, delta=delta)
        (movement,) = self._record(variant_id, [entry], reference, note)
        return movement

    def transfer(
        self,
        variant_id: int,
        from_location_id: int,
        to_location_id: int,
        quantity: int,
        reference: Optional[MovementReference] = None,
        note: Optional[str] = None,
    ) -> Tuple[InventoryMovement, InventoryMovement]:
        """Move stock between two locations as a pair of ``transfer`` movements."""
        if from_location_id == to_location_id:
            raise InvalidMovement("Transfer source and destination must differ")
        out_delta = signed_delta(MovementType.TRANSFER, quantity, MovementDirection.OUT)
        in_delta = signed_delta(MovementType.TRANSFER, quantity, MovementDirection.IN)
        self._require_variant(variant_id)
        self._require_location(from_location_id)
        self._require_location(to_location_id)

        entries = [
            _Entry(location_id=from_location_id, movement_type=MovementType.TRANSFER, delta=out_delta),
            _Entry(location_id=to_location_id, movement_type=MovementType.TRANSFER, delta=in_delta),
        ]
        outgoing, incoming = self._record(variant_id, entries, reference, note)
        return outgoing, incoming

    def _record(
        self,
        variant_id: int,
        entries: List[_Entry],
        reference: Optional[MovementReference],
        note: Optional[str],
    ) -> List[InventoryMovement]:
        movements = {}
        try:
            for entry in entries:
                self._ensure_stock_level(variant_id, entry.location_id)
            # Lock rows in a stable order so opposite transfers cannot deadlock
            for entry in sorted(entries, key=lambda e: e.location_id):
                quantity_after = self._update_on_hand(variant_id, entry.location_id, entry.delta)
                if quantity_after is None:
                    raise InsufficientStock(
                        variant_id, entry.location_id,
                        available=-1, requested=-entry.delta,
                    )
                movement = InventoryMovement(
                    variant_id=variant_id,
                    location_id=entry.location_id,
                    type=entry.movement_type.value,
                    quantity_delta=entry.delta,
                    quantity_before=quantity_after - entry.delta,
                    quantity_after=quantity_after,
                    reference_type=reference.type if reference else None,
                    reference_id=reference.id if reference else None,
                    note=note,
                    occurred_at=datetime.utcnow(),
                )
                self.db.add(movement)
                self.db.flush()
                movements[entry] = movement
            self.db.commit()
        except InsufficientStock as exc:
            self.db.rollback()
            available = self.stock_level(variant_id, exc.location_id)
            raise InsufficientStock(variant_id, exc.location_id, available, exc.requested) from None
        except IntegrityError as exc:
            self.db.rollback()
            movement_type = entries[0].movement_type
            if reference is not None and self.has_applied(reference, movement_type, variant_id):
                raise DuplicateMovement(reference.type, reference.id, movement_type.value) from exc
            raise
        except OperationalError as exc:
            self.db.rollback()
            raise TransientWriteFailure(str(exc.orig)) from exc
        except Exception:
            self.db.rollback()
            raise

        recorded = [movements[entry] for entry in entries]
        for movement in recorded:
            self._log_movement(movement)
        return recorded

    def _update_on_hand(self, variant_id: int, location_id: int, delta: int) -> Optional[int]:
        stmt = (
            stock_tbl.update()
            .where(stock_tbl.c.variant_id == variant_id)
            .where(stock_tbl.c.location_id == location_id)
            .values(on_hand=stock_tbl.c.on_hand + delta, updated_at=datetime.utcnow())
            .returning(stock_tbl.c.on_hand)
        )
        if delta < 0 and not self.allow_backorder:
            stmt = stmt.where(stock_tbl.c.on_hand + delta >= 0)
        return self.db.execute(stmt).scalar_one_or_none()

    def _ensure_stock_level(self, variant_id: int, location_id: int) -> None:
        existing = self.db.execute(
            select(StockLevel.id)
            .where(StockLevel.variant_id == variant_id)
            .where(StockLevel.location_id == location_id)
        ).scalar_one_or_none()
        if existing is not None:
            return
        values = {"variant_id": variant_id, "location_id": location_id, "on_hand": 0}
        upsert = _INSERT_IGNORING_CONFLICTS.get(self.db.get_bind().dialect.name)
        if upsert is None:
            self.db.execute(stock_tbl.insert().values(**values))
            return
        # A concurrent writer may create the row first; it commits or rolls back with the movement
        self.db.execute(
            upsert(stock_tbl).values(**values).on_conflict_do_nothing(index_elements=["variant_id", "location_id"])
        )

    def _require_variant(self, variant_id: int) -> ProductVariant:
        variant = self.db.get(ProductVariant, variant_id)
        if variant is None:
            raise UnknownEntity("variant", variant_id)
        return variant

    def _require_location(self, location_id: int) -> Location:
        location = self.db.get(Location, location_id)
        if location is None or not location.is_active:
            raise UnknownEntity("location", location_id)
        return location

    def _log_movement(self, movement: InventoryMovement) -> None:
        fields = {
            "movement_id": movement.id,
            "variant_id": movement.variant_id,
            "location_id": movement.location_id,
            "type": movement.type,
            "quantity_change": movement.quantity_delta,
            "quantity_before": movement.quantity_before,
            "quantity_after": movement.quantity_after,
            "reference": f"{movement.reference_type}:{movement.reference_id}" if movement.reference_type else None,
        }
        logger.info(f"inventory_{movement.type}", extra={"extra_fields": fields})
        if movement.quantity_after < 0:
            logger.warning("Negative inventory after adjustment", extra={"extra_fields": fields})

    # -- reads ------------------------------------------------------------------

    def has_applied(
        self,
        reference: MovementReference,
        movement_type: MovementType,
        variant_id: Optional[int] = None,
        location_id: Optional[int] = None,
    ) -> bool:
        return self.find_movement(reference, movement_type, variant_id, location_id) is not None

    def find_movement(
        self,
        reference: MovementReference,
        movement_type: MovementType,
        variant_id: Optional[int] = None,
        location_id: Optional[int] = None,
    ) -> Optional[InventoryMovement]:
        stmt = (
            select(InventoryMovement)
            .where(InventoryMovement.reference_type == reference.type)
            .where(InventoryMovement.reference_id == reference.id)
            .where(InventoryMovement.type == MovementType(movement_type).value)
        )
        if variant_id is not None:
            stmt = stmt.where(InventoryMovement.variant_id == variant_id)
        if location_id is not None:
            stmt = stmt.where(InventoryMovement.location_id == location_id)
        return self.db.execute(stmt.order_by(InventoryMovement.id).limit(1)).scalars().first()

    def movements_for(
        self,
        variant_id: Optional[int] = None,
        location_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[InventoryMovement]:
        stmt = select(InventoryMovement)
        if variant_id is not None:
            stmt = stmt.where(InventoryMovement.variant_id == variant_id)
        if location_id is not None:
            stmt = stmt.where(InventoryMovement.location_id == location_id)
        stmt = stmt.order_by(InventoryMovement.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def stock_level(self, variant_id: int, location_id: int) -> int:
        on_hand = self.db.execute(
            select(StockLevel.on_hand)
            .where(StockLevel.variant_id == variant_id)
            .where(StockLevel.location_id == location_id)
        ).scalar_one_or_none()
        return int(on_hand or 0)

    def stock_levels(self, variant_id: Optional[int] = None, location_id: Optional[int] = None) -> List[StockLevel]:
        stmt = select(StockLevel)
        if variant_id is not None:
            stmt = stmt.where(StockLevel.variant_id == variant_id)
        if location_id is not None:
            stmt = stmt.where(StockLevel.location_id == location_id)
        # on_hand is written with core UPDATEs; refresh rows already in the session
        stmt = stmt.order_by(StockLevel.id).execution_options(populate_existing=True)
        return list(self.db.execute(stmt).scalars().all())

    def total_on_hand(self, variant_id: int) -> int:
        total = self.db.execute(
            select(func.coalesce(func.sum(StockLevel.on_hand), 0)).where(StockLevel.variant_id == variant_id)
        ).scalar_one()
        return int(total)

    def reconcile(self, variant_id: int) -> List[dict]:
        """Compare each location's on-hand with the sum of its movement deltas."""
        self._require_variant(variant_id)
        on_hand = {
            level.location_id: level.on_hand
            for level in self.stock_levels(variant_id=variant_id)
        }
        rows = self.db.execute(
            select(InventoryMovement.location_id, func.sum(InventoryMovement.quantity_delta))
            .where(InventoryMovement.variant_id == variant_id)
            .group_by(InventoryMovement.location_id)
        ).all()
        movement_sums = {location_id: int(total or 0) for location_id, total in rows}

        report = []
        for location_id in sorted(set(on_hand) | set(movement_sums)):
            current = int(on_hand.get(location_id, 0))
            expected = movement_sums.get(location_id, 0)
            report.append({
                "location_id": location_id,
                "on_hand": current,
                "movement_sum": expected,
                "difference": current - expected,
                "consistent": current == expected,
            })
        if any(not line["consistent"] for line in report):
            logger.warning(
                "Inventory mismatch",
                extra={"extra_fields": {"variant_id": variant_id, "locations": report}},
            )
        return report

    def default_location_for(self, variant_id: int) -> Optional[int]:
        """Location to use when an event names none.

        The active location holding the most stock of the variant, else the
        default location, else the first active one.
        """
        with_stock = self.db.execute(
            select(StockLevel.location_id)
            .join(Location, Location.id == StockLevel.location_id)
            .where(StockLevel.variant_id == variant_id)
            .where(StockLevel.on_hand > 0)
            .where(Location.is_active.is_(True))
            .order_by(StockLevel.on_hand.desc(), StockLevel.location_id)
            .limit(1)
        ).scalar_one_or_none()
        if with_stock is not None:
            return with_stock

        return self.db.execute(
            select(Location.id)
            .where(Location.is_active.is_(True))
            .order_by(Location.is_default.desc(), Location.id)
            .limit(1)
        ).scalar_one_or_none()


def net_change(movements: Iterable[InventoryMovement]) -> int:
    return sum(m.quantity_delta for m in movements)
