import ssl
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from adpilot.config import get_settings

settings = get_settings()


def _connect_args(url: str) -> dict:
    # Railway Postgres requires SSL; asyncpg needs an ssl.SSLContext
    if "localhost" in url or "127.0.0.1" in url or not url.startswith("postgresql"):
        return {}
    ssl_ctx = ssl.create_default_context()
    ssl_ctx.check_hostname = False
    ssl_ctx.verify_mode = ssl.CERT_NONE
    return {"ssl": ssl_ctx}


def make_engine(url: str, **kwargs) -> AsyncEngine:
    """Build an async engine with the connection arguments the URL needs."""
    return create_async_engine(url, connect_args=_connect_args(url), **kwargs)


engine = make_engine(
    settings.async_database_url,
    echo=False,
    pool_size=20,
    max_overflow=10,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def session_scope(factory: async_sessionmaker | None = None) -> AsyncIterator[AsyncSession]:
    """Unit of work for background processes: commit on success, roll back on error."""
    async with (factory or async_session)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
