from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Any

from stockledger.domain.movement_types import MovementDirection, MovementType

# Inbound events

class OrderItemCreated(BaseModel):
    order_item_id: int
    variant_id: int
    location_id: Optional[int] = None
    quantity: int = Field(gt=0)

class OrderReturnCompleted(BaseModel):
    return_id: int
    variant_id: int
    location_id: Optional[int] = None
    quantity: int = Field(gt=0)
    # Lets the restock land where the sale was taken from
    order_item_id: Optional[int] = None

class OrderItemCancelled(BaseModel):
    order_item_id: int
    variant_id: int
    # Defaults to the quantity the sale deducted
    quantity: Optional[int] = Field(default=None, gt=0)

# Ledger API

class ReferenceIn(BaseModel):
    type: str = Field(min_length=1, max_length=50)
    id: str = Field(min_length=1, max_length=100)

class MovementCreate(BaseModel):
    variant_id: int
    location_id: int
    type: MovementType
    quantity: int = Field(gt=0)
    direction: Optional[MovementDirection] = None
    reference: Optional[ReferenceIn] = None
    note: Optional[str] = None

class TransferCreate(BaseModel):
    variant_id: int
    from_location_id: int
    to_location_id: int
    quantity: int = Field(gt=0)
    reference: Optional[ReferenceIn] = None
    note: Optional[str] = None

class MovementRead(BaseModel):
    id: int
    variant_id: int
    location_id: int
    type: str
    quantity_delta: int
    quantity_before: int
    quantity_after: int
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    note: Optional[str] = None
    occurred_at: datetime
    class Config:
        from_attributes = True

class MovementTypeRead(BaseModel):
    type: MovementType
    label: str
    # None for types whose direction the caller chooses
    direction: Optional[MovementDirection] = None

class StockLevelRead(BaseModel):
    id: int
    variant_id: int
    location_id: int
    on_hand: int
    updated_at: Optional[datetime] = None
    class Config:
        from_attributes = True

class ReconciliationLine(BaseModel):
    location_id: int
    on_hand: int
    movement_sum: int
    difference: int
    consistent: bool

class ReconciliationRead(BaseModel):
    variant_id: int
    total_on_hand: int
    consistent: bool
    locations: list[ReconciliationLine]

# Purchase receipts and amounts

class PurchaseReceiptLine(BaseModel):
    purchase_order_item_id: int
    variant_id: int
    location_id: int
    quantity: int = Field(gt=0)
    # Supplier text, Turkish or English number format
    unit_cost: str
    note: Optional[str] = None

class PurchaseReceiptCreate(BaseModel):
    lines: list[PurchaseReceiptLine]

class PurchaseReceiptLineResult(BaseModel):
    purchase_order_item_id: int
    status: str  # "received" | "skipped" | "rejected"
    unit_cost_minor: Optional[int] = None
    movement_id: Optional[int] = None
    error: Optional[str] = None

class AmountParseRequest(BaseModel):
    amount: str

class AmountParseResponse(BaseModel):
    amount: str
    value: Optional[float] = None
    minor: Optional[int] = None

# Event delivery

class EventAccepted(BaseModel):
    event_type: str
    status: str  # "queued" | "deferred"
    task_id: Optional[str] = None
    failed_event_id: Optional[int] = None

class EventResultRead(BaseModel):
    outcome: str
    movement_id: Optional[int] = None
    failed_event_id: Optional[int] = None
    detail: Optional[str] = None

class FailedEventRead(BaseModel):
    id: int
    event_type: str
    payload: dict[str, Any]
    error_type: str
    error_message: Optional[str] = None
    attempts: int
    status: str
    created_at: datetime
    resolved_at: Optional[datetime] = None
    class Config:
        from_attributes = True
