"""SQLite engine, session scope and the process-wide database handle."""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..orm.base import Base

# Milliseconds a writer waits on a locked database before failing
BUSY_TIMEOUT_MS = 30_000


class DatabaseService:
    """Owns the async engine for one SQLite file.

    Concurrent mention workers each open their own session; SQLite serializes
    the writes, so connections wait on the lock rather than erroring out.
    """

    def __init__(self, database_path: str | Path):
        self.database_path = Path(database_path).expanduser()
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine: AsyncEngine = create_async_engine(
            f"sqlite+aiosqlite:///{self.database_path}",
            echo=False,
            connect_args={"timeout": BUSY_TIMEOUT_MS / 1000},
        )

        @event.listens_for(self.engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
            cursor.close()

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def initialize(self) -> None:
        """Create any missing tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session committed on clean exit and rolled back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        await self.engine.dispose()


db_service: DatabaseService | None = None


def get_db_service() -> DatabaseService:
    """Return the initialized process-wide service."""
    if db_service is None:
        raise RuntimeError("Database service not initialized")
    return db_service


async def init_db_service(database_path: str | Path) -> DatabaseService:
    """Open (and create if needed) the database at ``database_path``."""
    global db_service
    db_service = DatabaseService(database_path)
    await db_service.initialize()
    return db_service


async def close_db_service() -> None:
    """Dispose of the process-wide service, if any."""
    global db_service
    if db_service is not None:
        await db_service.close()
        db_service = None
