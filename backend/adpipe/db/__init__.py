"""
Database module for adpipe.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from adpipe.db.engine import async_session, engine, get_session, shutdown
from adpipe.db.models import Base, GenerationUnit, Project, StageTransition

logger = logging.getLogger(__name__)


async def init_database(bind: AsyncEngine = None):
    """Initialize database schema on first run (idempotent)."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


__all__ = [
    "Base",
    "Project",
    "GenerationUnit",
    "StageTransition",
    "engine",
    "async_session",
    "get_session",
    "shutdown",
    "init_database",
]
