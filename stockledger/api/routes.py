from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from stockledger.infrastructure.db import get_db
from stockledger.application.amounts import parse_amount, parse_amount_minor
from stockledger.application.ledger import InventoryLedger, MovementReference
from stockledger.application.purchasing import receive_purchase_lines
from stockledger.application.schemas import (
    AmountParseRequest,
    AmountParseResponse,
    MovementCreate,
    MovementRead,
    MovementTypeRead,
    PurchaseReceiptCreate,
    PurchaseReceiptLineResult,
    ReconciliationRead,
    StockLevelRead,
    TransferCreate,
)
from stockledger.domain.movement_types import MovementType, implied_direction
from stockledger.domain.errors import (
    DuplicateMovement,
    InsufficientStock,
    InvalidMovement,
    InventoryError,
    TransientWriteFailure,
    UnknownEntity,
)

router = APIRouter(prefix="/inventory", tags=["inventory"])

def http_error(exc: InventoryError) -> HTTPException:
    if isinstance(exc, UnknownEntity):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InsufficientStock, DuplicateMovement)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InvalidMovement):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, TransientWriteFailure):
        return HTTPException(status_code=503, detail="Inventory is busy, retry the request")
    return HTTPException(status_code=500, detail=str(exc))

def _reference(payload) -> Optional[MovementReference]:
    if payload.reference is None:
        return None
    return MovementReference(payload.reference.type, payload.reference.id)

@router.get("/levels", response_model=list[StockLevelRead])
def list_stock_levels(
    variant_id: Optional[int] = None,
    location_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    return InventoryLedger(db).stock_levels(variant_id=variant_id, location_id=location_id)

@router.get("/movements", response_model=list[MovementRead])
def list_movements(
    variant_id: Optional[int] = None,
    location_id: Optional[int] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return InventoryLedger(db).movements_for(variant_id=variant_id, location_id=location_id, limit=limit)

@router.post("/movements", response_model=MovementRead, status_code=201)
def create_movement(payload: MovementCreate, db: Session = Depends(get_db)):
    try:
        return InventoryLedger(db).apply_movement(
            payload.variant_id,
            payload.location_id,
            payload.type,
            payload.quantity,
            reference=_reference(payload),
            direction=payload.direction,
            note=payload.note,
        )
    except InventoryError as exc:
        raise http_error(exc)

@router.post("/transfers", response_model=list[MovementRead], status_code=201)
def create_transfer(payload: TransferCreate, db: Session = Depends(get_db)):
    try:
        outgoing, incoming = InventoryLedger(db).transfer(
            payload.variant_id,
            payload.from_location_id,
            payload.to_location_id,
            payload.quantity,
            reference=_reference(payload),
            note=payload.note,
        )
    except InventoryError as exc:
        raise http_error(exc)
    return [outgoing, incoming]

@router.get("/variants/{variant_id}/reconciliation", response_model=ReconciliationRead)
def reconcile_variant(variant_id: int, db: Session = Depends(get_db)):
    ledger = InventoryLedger(db)
    try:
        lines = ledger.reconcile(variant_id)
    except InventoryError as exc:
        raise http_error(exc)
    return ReconciliationRead(
        variant_id=variant_id,
        total_on_hand=ledger.total_on_hand(variant_id),
        consistent=all(line["consistent"] for line in lines),
        locations=lines,
    )

@router.post("/purchase-receipts", response_model=list[PurchaseReceiptLineResult])
def receive_purchase(payload: PurchaseReceiptCreate, db: Session = Depends(get_db)):
    try:
        return receive_purchase_lines(InventoryLedger(db), payload.lines)
    except InventoryError as exc:
        raise http_error(exc)

@router.post("/amounts/parse", response_model=AmountParseResponse)
def parse_amount_text(payload: AmountParseRequest):
    return AmountParseResponse(
        amount=payload.amount,
        value=parse_amount(payload.amount),
        minor=parse_amount_minor(payload.amount),
    )

@router.get("/movement-types", response_model=list[MovementTypeRead])
def list_movement_types():
    return [
        MovementTypeRead(type=movement_type.value, label=movement_type.label, direction=implied_direction(movement_type))
        for movement_type in MovementType
    ]
