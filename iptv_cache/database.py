import asyncio
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy import MetaData, event

logger = logging.getLogger(__name__)


def _create_session_factory(engine):
    """Create async session factory from engine"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )


class Database:
    """
    One SQLite file with its engine and session factory.

    Each store owns exactly one Database; nothing else opens sessions on it.
    """

    def __init__(self, path: str, metadata: MetaData, *, name: str = "database") -> None:
        self.path = path
        self.name = name
        self._metadata = metadata
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_initialized(self) -> bool:
        return self._session_factory is not None

    async def init(self) -> None:
        """Initialize database schema and engine"""
        logger.info("Initializing %s at %s", self.name, self.path)

        self._engine = create_async_engine(
            f"sqlite+aiosqlite:///{self.path}",
            echo=False,
            future=True,
            pool_pre_ping=True,
            connect_args={"timeout": 30, "check_same_thread": False},
        )

        def configure_sqlite(dbapi_conn, _):
            """Configure SQLite connection parameters"""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.execute("PRAGMA cache_size = -64000")
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()

        event.listen(self._engine.sync_engine, "connect", configure_sqlite)

        async with self._engine.begin() as conn:
            await conn.run_sync(self._metadata.create_all)

        self._session_factory = _create_session_factory(self._engine)

        logger.info("%s initialized successfully", self.name)

    async def close(self) -> None:
        """Close database connections on shutdown"""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("%s connections closed", self.name)

    def get_session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get the session factory (initialized in init)"""
        if self._session_factory is None:
            raise RuntimeError(f"{self.name} not initialized. Call init() during startup.")
        return self._session_factory

    @asynccontextmanager
    async def session_scope(self, *, begin: bool = True) -> AsyncIterator[AsyncSession]:
        """
        Provide an async session context manager with optional automatic transaction handling.

        Args:
            begin: When True (default), wrap the session in `session.begin()` for auto commit/rollback.
                   When False, caller is responsible for transaction demarcation and commit/rollback.
        """
        session_factory = self.get_session_factory()

        async with session_factory() as session:
            if begin:
                async with session.begin():
                    yield session
            else:
                try:
                    yield session
                except Exception:
                    await session.rollback()
                    raise
                else:
                    await session.commit()

    async def checkpoint(self, *, retries: int = 6) -> None:
        """Fold the WAL back into the main database file, retrying while readers hold it."""
        async with self.session_scope(begin=False) as session:
            connection = await session.connection()
            backoff = 1.0
            for attempt in range(1, retries + 1):
                result = await connection.exec_driver_sql("PRAGMA wal_checkpoint(TRUNCATE)")
                row = result.fetchone()
                if row is None:
                    logger.warning("WAL checkpoint returned no data; skipping further attempts")
                    return
                busy, log_frames, checkpointed = row
                if busy == 0:
                    logger.debug(
                        "WAL checkpoint completed (log_frames=%s, checkpointed=%s)",
                        log_frames,
                        checkpointed,
                    )
                    return

                logger.warning(
                    "WAL checkpoint busy on attempt %s/%s; retrying in %.1fs",
                    attempt,
                    retries,
                    backoff,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 30.0)

            logger.error(
                "WAL checkpoint could not complete after %s attempts; readers may still be active",
                retries,
            )
