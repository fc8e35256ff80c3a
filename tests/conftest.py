"""
Shared fixtures: a fresh SQLite file database per test, a small catalog, and
Celery running tasks inline
"""

import os

# Must be set before stockledger modules read settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from stockledger.application.ledger import InventoryLedger
from stockledger.domain.models import Location, ProductVariant
from stockledger.domain.movement_types import MovementDirection, MovementType
from stockledger.infrastructure import db


@pytest.fixture
def engine(tmp_path):
    engine = db.configure_engine(f"sqlite:///{tmp_path / 'stockledger.db'}")
    db.init_models()
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    session = db.SessionLocal()
    yield session
    session.close()


@pytest.fixture
def catalog(session):
    variant = ProductVariant(sku="TSHIRT-RED-M", title="T-shirt red M")
    other_variant = ProductVariant(sku="MUG-WHITE", title="Mug white")
    main = Location(code="MAIN", name="Main warehouse", is_default=True)
    store = Location(code="STORE", name="Shop floor")
    closed = Location(code="OLD", name="Closed depot", is_active=False)
    session.add_all([variant, other_variant, main, store, closed])
    session.commit()
    return SimpleNamespace(
        variant=variant.id,
        other_variant=other_variant.id,
        main=main.id,
        store=store.id,
        closed=closed.id,
    )


@pytest.fixture
def ledger(session):
    return InventoryLedger(session, allow_backorder=False)


@pytest.fixture
def stock_up(ledger):
    """Bring a location's on-hand up by ``quantity`` through an adjustment"""
    def _stock_up(variant_id, location_id, quantity):
        return ledger.apply_movement(
            variant_id, location_id, MovementType.ADJUSTMENT, quantity, direction=MovementDirection.IN,
        )
    return _stock_up


@pytest.fixture
def client(engine):
    from stockledger.main import create_app
    return TestClient(create_app(migrate=False))
