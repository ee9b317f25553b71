"""Engine, session factory and transaction boundary helpers."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from loguru import logger
from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from favilla_api.core.settings import settings
from favilla_api.services.loyalty.errors import TransactionTimeout

# query_canceled (statement_timeout) and lock_not_available
_PG_TIMEOUT_CODES = {"57014", "55P03"}
_SQLITE_BUSY_TIMEOUT_SECONDS = 15


def build_engine(database_url: str, *, echo: bool = False, **pool_options: Any) -> AsyncEngine:
    """Create an async engine for Postgres (asyncpg) or SQLite (aiosqlite).

    SQLite connections open every transaction with ``BEGIN IMMEDIATE`` so
    concurrent writers queue on the database lock the same way Postgres
    writers queue on the account's balance row.
    """

    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=echo,
            future=True,
            connect_args={"timeout": _SQLITE_BUSY_TIMEOUT_SECONDS},
        )
        _install_sqlite_locking(engine)
        return engine

    return create_async_engine(database_url, echo=echo, future=True, pool_pre_ping=True, **pool_options)


def _install_sqlite_locking(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ANN001
        # let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # noqa: ANN001
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = build_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a request-scoped session."""

    async with async_session() as session:
        yield session


def is_timeout_error(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _PG_TIMEOUT_CODES:
        return True
    return "database is locked" in str(orig).lower()


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run a block in one transaction, or in a savepoint if one is already open.

    The Postgres statement timeout is scoped to the transaction. Lock waits
    and cancelled statements surface as ``TransactionTimeout`` after the
    block has been rolled back.
    """

    transaction = session.begin_nested() if session.in_transaction() else session.begin()
    try:
        async with transaction:
            if session.bind is not None and session.bind.dialect.name == "postgresql":
                await session.execute(
                    text(f"SET LOCAL statement_timeout = {int(settings.ledger_statement_timeout_ms)}")
                )
            yield session
    except DBAPIError as exc:
        if not is_timeout_error(exc):
            raise
        logger.warning("Ledger transaction timed out", error=str(exc.orig))
        raise TransactionTimeout(str(exc.orig)) from exc
