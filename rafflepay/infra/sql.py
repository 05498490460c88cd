import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Callable, AsyncContextManager
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
)
from contextlib import asynccontextmanager

from ..config import Settings

Gated = Callable[[], AsyncContextManager[None]]


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE!!!!!!!!!!!
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@dataclass
class Database:
    """
    Engine, session factory and DB gate. `transaction()` is the unit of work:
    every function that must take part in the same atomic write receives the
    session it yields as its `tx` argument.
    """
    engine: AsyncEngine
    sessions: async_sessionmaker
    gated: Gated

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        async with self.gated():
            async with self.sessions() as session:
                async with session.begin():
                    yield session

    async def dispose(self) -> None:
        await self.engine.dispose()


def supports_skip_locked(db: AsyncSession | AsyncEngine) -> bool:
    """
    Whether the backing store can `SELECT ... FOR UPDATE SKIP LOCKED`.
    """
    if isinstance(db, AsyncSession):
        dialect = db.get_bind().dialect
    else:
        dialect = db.dialect
    return dialect.name == "postgresql"


def make_async_engine(database_url: str, settings: Settings | None = None):
    db_url = _normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = settings.db_pool_size if settings else 10
        kw.update(
            pool_size=pool_size,
            max_overflow=settings.db_max_overflow if settings else 10,
            pool_timeout=settings.db_pool_timeout if settings else 30,
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            # we emit BEGIN ourselves, see _sqlite_begin
            dbapi_connection.isolation_level = None
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.close()

        # SQLite has no row locks: take the write lock up front so that
        # read-then-write transactions serialize instead of deadlocking.
        @event.listens_for(engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # DB-GATE!!!!!!!!!!!
    # Create a per-engine gate. Default to pool_size
    gate_limit = settings.db_gate_limit if settings else None
    if gate_limit is None:
        gate_limit = pool_size if pool_size is not None else 10

    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, db_gate, gated


def make_database(settings: Settings) -> Database:
    engine, SessionAsync, _, gated = make_async_engine(
        settings.database_url, settings
    )
    return Database(engine=engine, sessions=SessionAsync, gated=gated)
