from sqlalchemy import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from botqueue.config.settings import Settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Database:
    """Queue store connection and session management."""

    def __init__(self, settings: Settings):
        self.settings = settings
        url = make_url(settings.database_url)
        if url.get_backend_name() == "sqlite":
            # In-memory SQLite must share one connection across sessions
            in_memory = url.database in (None, "", ":memory:")
            self.engine = create_async_engine(
                url,
                poolclass=StaticPool if in_memory else None,
                connect_args={"check_same_thread": False},
                echo=False,
            )
        else:
            self.engine = create_async_engine(
                settings.database_url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_recycle=settings.db_pool_recycle,
                pool_pre_ping=True,
                echo=False,
            )
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_all(self) -> None:
        """Create the queue tables if they do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()


def reconnect_delay(attempt: int, step_ms: int, max_delay_ms: int) -> float:
    """Linear reconnect backoff in seconds, capped at ``max_delay_ms``."""
    return min(max(attempt, 1) * step_ms, max_delay_ms) / 1000
