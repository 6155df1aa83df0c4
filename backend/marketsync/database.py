# backend/marketsync/database.py
"""
Engine, sessions and schema setup for the asset registry and price store.

Two backends are supported:
- PostgreSQL (production): QueuePool sized from settings
- SQLite (tests and local runs): StaticPool so an in-memory database is
  visible to every worker thread of an ingestion run

The schema is created by init_database(), once, before the service accepts
traffic. Request handlers and ingestion never check for it.
"""

import logging
from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool, QueuePool

from .config import settings

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("assets", "historical_prices")

POOL_CHECKOUT_TIMEOUT = 30


def _engine_options() -> dict[str, Any]:
    """Pool and driver options for the configured backend."""
    if settings.is_sqlite:
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }

    # Each ingestion worker holds one connection while it writes a ticker
    min_pool = settings.ingestion_max_workers + 1
    if settings.db_pool_size < min_pool:
        logger.warning(
            f"DB_POOL_SIZE={settings.db_pool_size} is below ingestion workers + 1 ({min_pool}); "
            f"ingestion runs will wait on the pool"
        )

    return {
        "poolclass": QueuePool,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_pool_max_overflow,
        "pool_recycle": settings.db_pool_recycle,
        "pool_pre_ping": settings.db_pool_pre_ping,
        "pool_timeout": POOL_CHECKOUT_TIMEOUT,
    }


def _create_engine() -> Engine:
    options = _engine_options()
    backend = "sqlite" if settings.is_sqlite else "postgresql"
    logger.info(f"Configuring {backend} engine ({options['poolclass'].__name__})")
    return create_engine(settings.database_url, echo=settings.debug, **options)


engine = _create_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_database(bind: Engine | None = None) -> None:
    """
    Create the registry and price tables if they are missing.

    Args:
        bind: Engine to initialize (default: the application engine)
    """
    from .models import Base

    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info(f"Database schema initialized ({', '.join(REQUIRED_TABLES)})")


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding one session per request.

    Usage:
        @router.get("/assets/{ticker}")
        def get_asset(ticker: str, db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _pool_status() -> dict[str, int] | None:
    pool = engine.pool
    if not isinstance(pool, QueuePool):
        return None
    return {
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }


def check_database_health() -> dict:
    """
    Probe the database for the /health endpoint.

    Returns:
        dict with "status" ("healthy" or "unhealthy"), the backend name,
        whether the schema tables exist, and QueuePool counters. Driver
        error text is logged, never returned.
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            existing = set(inspect(conn).get_table_names())
    except Exception as e:
        logger.error(f"Database health check failed: {type(e).__name__}: {e}")
        return {"status": "unhealthy", "error": "Database connection failed"}

    missing = [table for table in REQUIRED_TABLES if table not in existing]
    if missing:
        logger.error(f"Database schema incomplete, missing tables: {missing}")

    return {
        "status": "unhealthy" if missing else "healthy",
        "database": "sqlite" if settings.is_sqlite else "postgresql",
        "schema_ready": not missing,
        "pool": _pool_status(),
    }
