import threading
from contextlib import contextmanager, nullcontext

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    Build an engine for DATABASE_URL.
    In-memory SQLite shares a single connection so every session sees the same data.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def connection_lock(engine: Engine):
    """
    Engines with a single shared connection can run one transaction at a time,
    so their sessions are serialized across threads.
    """
    if isinstance(engine.pool, StaticPool):
        return threading.RLock()
    return nullcontext()


@contextmanager
def open_session(session_factory: sessionmaker, lock=None):
    with lock if lock is not None else nullcontext():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()


def init_db(engine: Engine) -> None:
    """Create tables and check that the database answers."""
    from db import models  # noqa: F401  (registers tables on Base)

    Base.metadata.create_all(bind=engine)
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
