import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.config import Settings
from app.coupon_registry import SqlCouponRegistry
from app.credit_ledger import MemoryCreditLedger, SqlCreditLedger
from app.session_manager import MemoryHistoryStore, SqlHistoryStore
from db.database import connection_lock, create_db_engine, create_session_factory, init_db

logger = logging.getLogger(__name__)

DATABASE = "database"
MEMORY = "memory"


@dataclass
class Backend:
    """The stores a process works against. Chosen once, at startup."""
    name: str
    ledger: object
    history: object
    coupons: Optional[SqlCouponRegistry] = None
    engine: Optional[Engine] = None


def memory_backend(settings: Settings) -> Backend:
    return Backend(
        name=MEMORY,
        ledger=MemoryCreditLedger(settings.default_credits, settings.account_prefix),
        history=MemoryHistoryStore()
    )


def database_backend(engine: Engine, settings: Settings) -> Backend:
    factory = create_session_factory(engine)
    lock = connection_lock(engine)
    return Backend(
        name=DATABASE,
        ledger=SqlCreditLedger(factory, settings.default_credits, settings.account_prefix, lock=lock),
        history=SqlHistoryStore(factory, lock=lock),
        coupons=SqlCouponRegistry(factory, settings.account_prefix, lock=lock),
        engine=engine
    )


def open_backend(settings: Settings) -> Backend:
    if not settings.database_url:
        logger.info("DATABASE_URL not provided, using in-memory storage")
        return memory_backend(settings)

    try:
        engine = create_db_engine(settings.database_url)
        init_db(engine)
    except (SQLAlchemyError, ImportError) as e:
        logger.error("Failed to connect to the database: %s", e)
        logger.info("Falling back to in-memory storage")
        return memory_backend(settings)

    logger.info("Database tables initialized")
    return database_backend(engine, settings)
