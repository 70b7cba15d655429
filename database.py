"""
Database Configuration and Session Management
============================================

Builds the async engine and session factory used by the ledger core. Nothing
is created at import time: the server (or a test) builds an engine from a URL
and passes the session factory into the services that need it.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)
from sqlalchemy.pool import StaticPool

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def to_async_database_url(database_url: str) -> str:
    """Rewrite a plain PostgreSQL URL for the asyncpg driver"""
    async_url = database_url
    if async_url.startswith("postgres://"):
        async_url = async_url.replace("postgres://", "postgresql://", 1)
    if async_url.startswith("postgresql://"):
        async_url = async_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg uses 'ssl' instead of 'sslmode'
    async_url = async_url.replace("sslmode=require", "ssl=require")
    async_url = async_url.replace("sslmode=prefer", "ssl=prefer")
    async_url = async_url.replace("sslmode=disable", "ssl=disable")
    return async_url


def build_async_engine(database_url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the configured database"""
    url = to_async_database_url(database_url or Config.DATABASE_URL)

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            # A single shared connection keeps the in-memory schema alive
            kwargs["poolclass"] = StaticPool
        engine = create_async_engine(url, echo=echo, **kwargs)
    else:
        engine = create_async_engine(
            url,
            pool_size=7,
            max_overflow=15,
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,
            pool_timeout=30,
            echo=echo,
            connect_args={
                "server_settings": {"application_name": "w3bstore_ledger_core"},
                "timeout": 10,
                "command_timeout": 30,
            },
        )

    logger.info(f"🏗️ DATABASE_ENGINE: Created async engine ({engine.url.get_backend_name()})")
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory shared by the registry, ledger and jobs"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # Returned entities stay readable after commit
    )


@asynccontextmanager
async def managed_session(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """
    Session scope that commits on success and rolls back on any error.

    Usage:
        async with managed_session(session_factory) as session:
            session.add(record)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine) -> None:
    """Create all database tables if they don't exist"""
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables ready")
