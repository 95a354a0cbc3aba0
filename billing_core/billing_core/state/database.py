"""Engine and session helpers for the billing state store.

The URL scheme picks the backend:

* ``postgresql+asyncpg://`` -- pooled PostgreSQL engine.  Statement and lock
  timeouts bound how long a webhook can wait on another delivery's
  subscription row lock.
* ``sqlite+aiosqlite://`` -- local engine from
  :mod:`billing_core.state.sqlite_adapter`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

_STATEMENT_TIMEOUT_MS = 30_000
# Upper bound on waiting for a subscription row held by a concurrent delivery.
_LOCK_TIMEOUT_MS = 10_000


def is_sqlite_url(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def sqlite_path_from_url(database_url: str) -> str:
    """Return the file path of a SQLite URL, or ``:memory:``.

    ``sqlite+aiosqlite:///state.db`` -> ``state.db``;
    ``sqlite+aiosqlite://`` and ``sqlite+aiosqlite:///:memory:`` -> ``:memory:``.
    """
    _, sep, path = database_url.partition("///")
    if not sep or not path:
        return ":memory:"
    return path


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        PostgreSQL (asyncpg) or SQLite (aiosqlite) connection string.
    pool_size, max_overflow:
        PostgreSQL pool sizing.  Ignored for SQLite.
    """
    if is_sqlite_url(database_url):
        from billing_core.state.sqlite_adapter import get_local_engine

        return get_local_engine(sqlite_path_from_url(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={
            "server_settings": {
                "statement_timeout": str(_STATEMENT_TIMEOUT_MS),
                "lock_timeout": str(_LOCK_TIMEOUT_MS),
            }
        },
    )
    logger.info(
        "Created PostgreSQL engine (pool_size=%d, max_overflow=%d, lock_timeout=%dms)",
        pool_size,
        max_overflow,
        _LOCK_TIMEOUT_MS,
    )
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory for *engine*.

    Sessions keep attribute values after commit; services read committed
    records after the transaction ends.
    """
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on clean exit and rolls back on error."""
    session = get_session_factory(engine)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
