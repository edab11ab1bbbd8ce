"""
SQLAlchemy engine and session factories.

Two separate engines exist because:
- FastAPI read endpoints are async → asyncpg driver + async sessions
- Workers, the admission pipeline and the recovery services are sync → psycopg2 + sync sessions

Services never reach for these module-level factories themselves: they receive a
session factory in their constructor, so tests can hand them an in-memory SQLite one.
"""

from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy import create_engine

from config.settings import settings


class Base(DeclarativeBase):
    """Base class for all ORM models. SQLAlchemy uses this to track table metadata."""
    pass


# ── Async engine (for FastAPI) ──────────────────────────────────
async_engine = create_async_engine(settings.database_url, echo=False)
AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False)

# ── Sync engine (for workers and services) ──────────────────────
sync_engine = create_engine(settings.sync_database_url, echo=False, pool_pre_ping=True)
SyncSessionLocal = sessionmaker(sync_engine, expire_on_commit=False)
