from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import Settings

Base = declarative_base()


def build_engine(config: Settings, url: str | None = None, **kwargs) -> AsyncEngine:
    url = url or config.DATABASE_URL
    if config.DB_ISOLATION_LEVEL:
        kwargs.setdefault("isolation_level", config.DB_ISOLATION_LEVEL)
    if url.startswith("mysql"):
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_recycle", 3600)
    return create_async_engine(url, echo=config.DB_ECHO, **kwargs)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)
