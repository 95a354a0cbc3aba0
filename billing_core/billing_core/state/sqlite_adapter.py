"""SQLite backend for local runs and the test suite.

Uses the same table definitions as PostgreSQL.  Differences that matter to
the billing pipeline:

* ``SELECT ... FOR UPDATE`` is ignored; SQLite's single writer serialises
  concurrent subscription transitions instead, and ``busy_timeout`` makes a
  second writer wait rather than fail.
* ``INSERT ... ON CONFLICT DO NOTHING`` backs the processed-event ledger on
  both backends.
* JSONB columns are stored as JSON text.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = ".billing/state.db"
_BUSY_TIMEOUT_SECONDS = 30


def get_local_engine(db_path: Path | str = _DEFAULT_DB_PATH) -> AsyncEngine:
    """Create an aiosqlite engine for *db_path*.

    Parameters
    ----------
    db_path:
        Database file; parent directories are created.  ``:memory:`` gives
        a private in-memory database per connection.
    """
    if str(db_path) == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": _BUSY_TIMEOUT_SECONDS},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _configure_connection(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        # WAL lets the digest scheduler read while a webhook writes.
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create every billing table that does not exist yet."""
    from billing_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Billing tables ensured on %s", engine.url)
