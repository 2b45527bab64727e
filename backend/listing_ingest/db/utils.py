"""Database utility functions."""

from typing import Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from listing_ingest.models import Base


logger = structlog.get_logger(__name__)


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all snapshot tables that do not exist yet.

    Args:
        engine: Engine to use (defaults to the configured application engine)
    """
    if engine is None:
        from listing_ingest.db.session import engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", tables=sorted(Base.metadata.tables))


async def check_database_health(session_factory: Optional[async_sessionmaker] = None) -> dict:
    """Check if database is accessible and responsive.

    Returns:
        dict with 'healthy' boolean and optional 'error' message
    """
    if session_factory is None:
        from listing_ingest.db.session import async_session_factory as session_factory

    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            return {"healthy": True}
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return {"healthy": False, "error": str(e)}
