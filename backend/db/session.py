"""
Stockwise Database Session Management

Async SQLAlchemy engine and session factory.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""

    pass


def build_engine(database_url: str, echo: bool = False):
    kwargs = {"echo": echo, "pool_pre_ping": True}
    if database_url.startswith("postgresql"):
        kwargs.update(pool_size=20, max_overflow=10)
    return create_async_engine(database_url, **kwargs)


def build_session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


settings = get_settings()

engine = build_engine(settings.database_url, echo=settings.database_echo)

AsyncSessionLocal = build_session_factory(engine)
