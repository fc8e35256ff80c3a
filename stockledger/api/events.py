from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session
from stockledger.infrastructure.db import get_db
from stockledger.application.events import (
    ORDER_ITEM_CANCELLED,
    ORDER_ITEM_CREATED,
    ORDER_RETURN_COMPLETED,
)
from stockledger.application.schemas import (
    EventAccepted,
    EventResultRead,
    FailedEventRead,
    OrderItemCancelled,
    OrderItemCreated,
    OrderReturnCompleted,
)
from stockledger.domain.errors import UnknownEntity
from stockledger.domain.models import FailedInventoryEvent
from stockledger import worker

router = APIRouter(prefix="/events", tags=["events"])

@router.post("/order-item-created", response_model=EventAccepted, status_code=202)
def order_item_created(payload: OrderItemCreated):
    return worker.dispatch_event(ORDER_ITEM_CREATED, payload.model_dump())

@router.post("/order-return-completed", response_model=EventAccepted, status_code=202)
def order_return_completed(payload: OrderReturnCompleted):
    return worker.dispatch_event(ORDER_RETURN_COMPLETED, payload.model_dump())

@router.post("/order-item-cancelled", response_model=EventAccepted, status_code=202)
def order_item_cancelled(payload: OrderItemCancelled):
    return worker.dispatch_event(ORDER_ITEM_CANCELLED, payload.model_dump())

@router.get("/failed", response_model=list[FailedEventRead])
def list_failed_events(status: Optional[str] = None, db: Session = Depends(get_db)):
    stmt = select(FailedInventoryEvent)
    if status:
        stmt = stmt.where(FailedInventoryEvent.status == status)
    return db.execute(stmt.order_by(FailedInventoryEvent.id)).scalars().all()

@router.post("/failed/{failed_event_id}/replay", response_model=EventResultRead)
def replay_failed_event(failed_event_id: int):
    try:
        result = worker.build_handler().replay(failed_event_id)
    except UnknownEntity:
        raise HTTPException(status_code=404, detail="Failed event not found")
    return result.as_dict()
