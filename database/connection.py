"""
Async database access for protected records

- DatabaseSettings: URL and pool settings from config.yaml or DB_* variables
- DatabaseSessionProvider: owns the AsyncEngine and hands out transactional sessions
- db_retry: tenacity policy for connection-level OperationalErrors at startup

Production runs PostgreSQL through asyncpg; tests use SQLite files through aiosqlite.
"""

import os
import logging
from typing import Optional, AsyncGenerator, Callable, Dict, Any
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine
)
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from config_manager import DatabaseConfig
from database.models import Base

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Where the record store lives and how its pool is sized."""
    host: str = "localhost"
    port: int = 5432
    database: str = "kyc_database"
    user: str = "kyc_user"
    password: str = "kyc_password"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False
    url: str = ""

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        """Read DB_* variables; DATABASE_URL wins over the individual parts."""
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "kyc_database"),
            user=os.getenv("DB_USER", "kyc_user"),
            password=os.getenv("DB_PASSWORD", "kyc_password"),
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
            echo=os.getenv("DB_ECHO", "false").lower() == "true",
            url=os.getenv("DATABASE_URL", "")
        )

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> 'DatabaseSettings':
        return cls(
            host=config.host,
            port=config.port,
            database=config.name,
            user=config.user,
            password=config.password,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            echo=config.echo,
            url=config.url
        )

    def get_url(self) -> str:
        """Async driver URL; bare postgresql:// URLs are pointed at asyncpg."""
        if self.url:
            if self.url.startswith("postgresql://"):
                return self.url.replace("postgresql://", "postgresql+asyncpg://", 1)
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    @property
    def is_sqlite(self) -> bool:
        return self.get_url().startswith("sqlite")

    def get_pool_settings(self) -> Dict[str, Any]:
        """Engine pool keyword arguments (none for SQLite)."""
        if self.is_sqlite:
            return {}
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


# ============================================
# RETRY LOGIC
# ============================================

def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """
    Build a tenacity decorator that retries on OperationalError.

    Args:
        max_attempts: Attempts including the first one
        min_wait: Shortest pause between attempts (seconds)
        max_wait: Longest pause between attempts (seconds)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


db_retry = create_retry_decorator()


# ============================================
# SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Owns the async engine and hands out sessions.

    Usage:
        provider = DatabaseSessionProvider(DatabaseSettings(url="sqlite+aiosqlite:///kyc.db"))
        await provider.init()
        async with provider.session_scope() as session:
            session.add(record)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[AsyncEngine] = None
    ):
        """
        Args:
            settings: Connection settings (DB_* environment if omitted)
            engine: Ready-made engine, used instead of creating one
        """
        self._settings = settings or DatabaseSettings.from_env()
        self._engine = engine
        self._session_factory: Optional[async_sessionmaker] = None
        self._initialized = False

    async def init(self, echo: Optional[bool] = None) -> None:
        """Create the engine (verifying it can connect) and the session factory."""
        if self._initialized:
            return

        if echo is not None:
            self._settings.echo = echo

        if self._engine is None:
            self._engine = await self._create_engine_with_retry()

        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False
        )

        self._initialized = True
        logger.info(f"Record store connected ({'sqlite' if self._settings.is_sqlite else 'postgresql'})")

    @db_retry
    async def _create_engine_with_retry(self) -> AsyncEngine:
        engine = create_async_engine(
            self._settings.get_url(),
            echo=self._settings.echo,
            **self._settings.get_pool_settings()
        )

        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except OperationalError:
            await engine.dispose()
            raise

        return engine

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._session_factory

    @asynccontextmanager
    async def session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        """
        One transaction: committed when the block exits normally, rolled back
        when it raises or the task is cancelled.
        """
        if self._session_factory is None:
            await self.init()

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_tables(self) -> None:
        """Create the record tables directly from the models (tests and local setups)."""
        if self._engine is None:
            await self.init()
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Record tables created")

    async def health_check(self) -> bool:
        """True when a trivial query succeeds."""
        try:
            async with self.session_scope() as session:
                await session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {type(e).__name__}")
            return False

    async def close(self) -> None:
        """Dispose of the engine's pooled connections."""
        if self._engine:
            await self._engine.dispose()
            logger.info("Record store connections closed")
        self._initialized = False
        self._session_factory = None


def create_test_provider(
    url: str = "sqlite+aiosqlite:///:memory:",
    engine: Optional[AsyncEngine] = None
) -> DatabaseSessionProvider:
    """Provider for tests; pass a file URL when several connections must share data."""
    return DatabaseSessionProvider(settings=DatabaseSettings(url=url), engine=engine)
