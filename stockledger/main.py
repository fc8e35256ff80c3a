"""
HTTP entry point

    uvicorn stockledger.main:app --host 0.0.0.0 --port 8000
"""

import os
import subprocess
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shared.core import RequestLoggingMiddleware, ServiceHealth, get_logger, setup_logging
from stockledger.api.events import router as events_router
from stockledger.api.routes import router as inventory_router
from stockledger.core_settings import get_settings
from stockledger.infrastructure import db

SERVICE_NAME = "stockledger"
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

settings = get_settings()
setup_logging(
    service_name=SERVICE_NAME,
    level=settings.LOG_LEVEL,
    environment=settings.ENVIRONMENT,
    version=settings.SERVICE_VERSION,
)
logger = get_logger(__name__)


def upgrade_schema() -> bool:
    """Run ``alembic upgrade head`` from the project root; False if it did not succeed"""
    try:
        completed = subprocess.run(
            ["alembic", "upgrade", "head"], cwd=PROJECT_ROOT, capture_output=True, text=True, check=False,
        )
    except OSError as e:
        logger.error(f"alembic could not be started: {e}")
        return False
    if completed.returncode != 0:
        logger.warning("alembic upgrade failed", extra={"extra_fields": {"stderr": completed.stderr[-2000:]}})
        return False
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    migrated = upgrade_schema()
    # Tables missing from the migration history are still created
    db.init_models()
    logger.info(
        f"{SERVICE_NAME} {settings.SERVICE_VERSION} ready",
        extra={"extra_fields": {"migrated": migrated, "backorder": settings.INVENTORY_ALLOW_BACKORDER}},
    )
    yield
    db.engine.dispose()
    logger.info(f"{SERVICE_NAME} stopped")


def create_app(migrate: bool = True) -> FastAPI:
    app = FastAPI(
        title=SERVICE_NAME,
        description="Inventory ledger: stock levels, movements and order events",
        version=settings.SERVICE_VERSION,
        lifespan=lifespan if migrate else None,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.add_middleware(RequestLoggingMiddleware)

    health = ServiceHealth(
        SERVICE_NAME,
        settings.SERVICE_VERSION,
        engine_provider=lambda: db.engine,
        broker_url=settings.CELERY_BROKER_URL,
        required_settings={"database_url": settings.database_url},
    )
    app.include_router(health.create_health_router())
    app.include_router(inventory_router)
    app.include_router(events_router)

    @app.get("/")
    def root():
        return {
            "service": SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/api/docs",
        }

    return app


app = create_app()
