"""Database connection pool management."""

from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential

from core.config import Settings, settings as default_settings
from utils.logging import get_logger

logger = get_logger(__name__)


class DatabasePool:
    """Database connector owning the async engine and its session factory.

    ``connect()`` retries on its own and reports failures through the log;
    callers may fire it without awaiting the outcome.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _create_engine(self) -> AsyncEngine:
        url = make_url(self.settings.database_url)
        options = {"echo": self.settings.database_echo, "pool_pre_ping": True}
        # SQLite uses a single-connection pool without sizing options
        if not url.get_backend_name().startswith("sqlite"):
            options.update(
                pool_size=self.settings.database_pool_size,
                max_overflow=self.settings.database_max_overflow,
                pool_timeout=self.settings.database_pool_timeout,
                pool_recycle=self.settings.database_pool_recycle,
            )
        return create_async_engine(url, **options)

    async def connect(self) -> bool:
        """Create the engine and verify connectivity, retrying with backoff.

        Returns whether the database is reachable. Never raises on connection
        failure.
        """
        if self._connected:
            logger.warning("Attempt to reconnect an already connected database pool")
            return True

        if self._engine is None:
            self._engine = self._create_engine()
            self._session_factory = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)

        attempts = self.settings.database_connect_attempts
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(multiplier=self.settings.database_connect_backoff, min=0.5, max=10),
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(f"Retrying database connection (attempt {attempt.retry_state.attempt_number}/{attempts})")
                    await self.ping()
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            logger.error(f"Database connection failed after {attempts} attempt(s): {cause}")
            return False

        self._connected = True
        logger.info(f"Database connected: {make_url(self.settings.database_url).render_as_string(hide_password=True)}")
        return True

    async def ping(self) -> None:
        """Run a trivial query; raises if the database is unreachable."""
        if self._engine is None:
            raise RuntimeError("Database pool has not been initialized. Call connect() first.")
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    def get_session(self) -> AsyncSession:
        """Get a database session from the pool."""
        if self._session_factory is None:
            raise RuntimeError("Database pool has not been initialized. Call connect() first.")
        return self._session_factory()

    async def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        self._connected = False
        logger.info("Database pool closed")
