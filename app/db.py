from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.core.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)


def _get_database_url() -> str:
    database_url = settings.DATABASE_URL
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set")
    return database_url


def _connect_args(database_url: str) -> dict[str, object]:
    if not database_url.startswith("postgresql+asyncpg"):
        return {}
    timeout_ms = settings.DB_STATEMENT_TIMEOUT_MS
    return {
        "command_timeout": timeout_ms / 1000,
        "server_settings": {"statement_timeout": str(timeout_ms)},
    }


class Database:
    """Process-wide storage handle.

    Created once at startup and disposed on shutdown. Services receive
    ``session_factory`` instead of reaching for a module-level engine.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine, expire_on_commit=False
        )

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Database engine disposed")


def create_database(database_url: Optional[str] = None) -> Database:
    url = database_url or _get_database_url()
    engine = create_async_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
        connect_args=_connect_args(url),
    )
    return Database(engine)


async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


def is_transient_db_error(exc: BaseException) -> bool:
    """True for connection loss, pool exhaustion and statement timeouts."""
    if isinstance(exc, (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError)):
        return True
    if isinstance(exc, sa_exc.DBAPIError):
        if exc.connection_invalidated:
            return True
        orig_name = type(exc.orig).__name__ if exc.orig is not None else ""
        if "Timeout" in orig_name or orig_name == "QueryCanceledError":
            return True
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError))


@asynccontextmanager
async def translate_storage_errors() -> AsyncIterator[None]:
    """Re-raise transient database failures as ``StorageUnavailableError``."""
    try:
        yield
    except Exception as exc:
        if is_transient_db_error(exc):
            logger.warning("Transient storage failure: %s", exc)
            raise StorageUnavailableError(str(exc)) from exc
        raise
