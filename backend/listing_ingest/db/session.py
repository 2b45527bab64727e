"""Async database session and engine configuration."""

from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from listing_ingest.config import Settings, settings


def engine_options(config: Settings) -> Dict[str, Any]:
    """Keyword arguments for create_async_engine under the given settings.

    SQL echo follows DEBUG only when LOG_LEVEL is DEBUG as well. Pool sizing
    applies to server databases; SQLite gets no pool options.
    """
    options: Dict[str, Any] = {"echo": config.DEBUG and config.LOG_LEVEL.upper() == "DEBUG"}
    if not config.DATABASE_URL.startswith("sqlite"):
        options.update(
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return options


engine = create_async_engine(settings.DATABASE_URL, **engine_options(settings))

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
