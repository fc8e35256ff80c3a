"""
Celery worker for inventory events

    celery -A stockledger.worker worker --loglevel=info

Tasks acknowledge after they finish, so a worker lost mid-task has the event
redelivered; the handler's reference check turns the redelivery into a no-op.
"""
from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from shared.core import get_logger, setup_logging
from stockledger.application.events import (
    ORDER_ITEM_CANCELLED,
    ORDER_ITEM_CREATED,
    ORDER_RETURN_COMPLETED,
    InventoryEventHandler,
    record_deferred_event,
)
from stockledger.core_settings import get_settings
from stockledger.infrastructure.db import SessionLocal

settings = get_settings()
logger = get_logger(__name__)

celery = Celery(
    __name__,
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)
celery.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
)

def build_handler() -> InventoryEventHandler:
    return InventoryEventHandler(session_factory=SessionLocal)

@celery_setup_logging.connect
def _configure_logging(sender, **kwargs):
    setup_logging(
        service_name="stockledger-worker",
        level=settings.LOG_LEVEL,
        environment=settings.ENVIRONMENT,
        version=settings.SERVICE_VERSION,
    )

@celery.task(name='inventory.order_item_created', acks_late=True)
def order_item_created_task(payload: dict):
    """Deduct stock for a newly created order item"""
    return build_handler().dispatch(ORDER_ITEM_CREATED, payload).as_dict()

@celery.task(name='inventory.order_return_completed', acks_late=True)
def order_return_completed_task(payload: dict):
    """Put returned goods back on hand"""
    return build_handler().dispatch(ORDER_RETURN_COMPLETED, payload).as_dict()

@celery.task(name='inventory.order_item_cancelled', acks_late=True)
def order_item_cancelled_task(payload: dict):
    """Restore stock deducted for a cancelled order item"""
    return build_handler().dispatch(ORDER_ITEM_CANCELLED, payload).as_dict()

TASKS = {
    ORDER_ITEM_CREATED: order_item_created_task,
    ORDER_RETURN_COMPLETED: order_return_completed_task,
    ORDER_ITEM_CANCELLED: order_item_cancelled_task,
}

def dispatch_event(kind: str, payload: dict) -> dict:
    """
    Queue an inventory event

    Never raises for broker trouble: an event that cannot be queued is stored
    as deferred in the remediation table instead.
    """
    task = TASKS.get(kind)
    if task is None:
        raise ValueError(f"Unknown inventory event type: {kind}")
    try:
        async_result = task.apply_async(args=[payload])
    except Exception as exc:
        logger.error(
            f"Could not queue inventory event {kind}",
            exc_info=True,
            extra={'extra_fields': {'event_type': kind, 'payload': payload}}
        )
        failed_event_id = record_deferred_event(SessionLocal, kind, payload, exc)
        return {"event_type": kind, "status": "deferred", "task_id": None, "failed_event_id": failed_event_id}
    return {"event_type": kind, "status": "queued", "task_id": async_result.id, "failed_event_id": None}
