# rule_scheduler/core/database.py
from pathlib import Path
from typing import Any, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.engine import make_url
from sqlalchemy.pool import QueuePool
from sqlalchemy import text
import logging

from rule_scheduler.core.config import Settings, get_settings
from rule_scheduler.models.database import Base

logger = logging.getLogger(__name__)

# Set by init_database, cleared by close_database
async_engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker] = None


def build_engine(database_url: str, debug: bool = False, **pool_options) -> AsyncEngine:
    """Create the async engine, applying pool sizing only where the dialect pools connections"""
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        database = url.database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        return create_async_engine(database_url, echo=debug)

    return create_async_engine(
        database_url,
        echo=debug,
        pool_size=pool_options.get("pool_size", 10),
        max_overflow=pool_options.get("max_overflow", 20),
        pool_pre_ping=True,
        pool_recycle=3600,
    )


async def create_tables(engine: AsyncEngine):
    """Create every scheduler table that does not exist yet"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_database(settings: Optional[Settings] = None) -> async_sessionmaker:
    """Create the engine and session factory, create missing tables and verify connectivity"""
    global async_engine, async_session_maker

    settings = settings or get_settings()
    db_config = settings.get_database_config()
    engine = build_engine(
        db_config["url"],
        debug=db_config["echo"],
        pool_size=db_config["pool_size"],
        max_overflow=db_config["max_overflow"],
    )

    try:
        await create_tables(engine)
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database initialization failed for {engine.url.render_as_string(hide_password=True)}: {e}")
        await engine.dispose()
        raise

    async_engine = engine
    async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    logger.info(f"Database ready ({engine.dialect.name})")
    return async_session_maker


async def close_database():
    global async_engine, async_session_maker

    engine, async_engine, async_session_maker = async_engine, None, None
    if engine is not None:
        await engine.dispose()
        logger.info("Database connection closed")


async def ping_database() -> bool:
    if async_engine is None:
        return False
    try:
        async with async_engine.connect() as conn:
            return (await conn.execute(text("SELECT 1"))).scalar() == 1
    except Exception as e:
        logger.error(f"Database ping failed: {e}")
        return False


async def get_database_health() -> Dict[str, Any]:
    """Connectivity, dialect and, for pooled engines, connection counts"""
    if async_engine is None:
        return {"status": "unhealthy", "connected": False, "error": "Database not initialized"}

    connected = await ping_database()
    health: Dict[str, Any] = {
        "status": "healthy" if connected else "unhealthy",
        "connected": connected,
        "dialect": async_engine.dialect.name,
    }

    pool = async_engine.pool
    if isinstance(pool, QueuePool):
        health["pool"] = {
            "size": pool.size(),
            "checked_out": pool.checkedout(),
            "overflow": pool.overflow(),
        }
    return health
