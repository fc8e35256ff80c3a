from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from stockledger.core_settings import get_settings
from stockledger.domain.models import Base

settings = get_settings()

def build_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # Worker threads share the file; writers wait on the database lock
        connect_args = {"check_same_thread": False, "timeout": 30}
    elif url.startswith("postgresql"):
        # Row-lock waits fail fast and are retried by the event handler
        connect_args = {"options": f"-c lock_timeout={settings.DB_LOCK_TIMEOUT_MS}"}
    return create_engine(url, echo=False, future=True, connect_args=connect_args)

engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

def configure_engine(url: str) -> Engine:
    """Point the session factory at another database (tests, one-off scripts)."""
    global engine
    engine.dispose()
    engine = build_engine(url)
    SessionLocal.configure(bind=engine)
    return engine

def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_models():
    Base.metadata.create_all(engine)
