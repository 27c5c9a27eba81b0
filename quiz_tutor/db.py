"""
Async database access for the learning progress store
"""
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from quiz_tutor.config import settings
from quiz_tutor.models import Base


def build_engine(url: Optional[str] = None) -> AsyncEngine:
    """Engine for ``url`` (default: configured database) with environment pooling"""
    options = {
        "echo": settings.database_echo,
        "pool_pre_ping": True,
    }
    if settings.is_production:
        options.update(
            poolclass=AsyncAdaptedQueuePool,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_pool_size * 2,
        )
    else:
        # No pooling outside production; connections are opened per session
        options["poolclass"] = NullPool
    return create_async_engine(url or settings.database_url, **options)


engine = build_engine()

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)


async def ensure_schema(bind: AsyncEngine = engine) -> None:
    """Create the progress tables if they are missing"""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)


async def ping(bind: AsyncEngine = engine) -> None:
    async with bind.connect() as conn:
        await conn.execute(text("SELECT 1"))
