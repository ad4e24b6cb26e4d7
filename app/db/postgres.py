from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings


def create_session_factory(
    url: str | None = None, **engine_kwargs
) -> tuple[async_sessionmaker[AsyncSession], AsyncEngine]:
    """Create an async engine + session factory.

    Each Celery task builds its own pair because an engine's pool is bound to
    the event loop that first used it.
    """
    engine_kwargs.setdefault("echo", settings.app_debug)
    engine = create_async_engine(url or settings.postgres_url, **engine_kwargs)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), engine
