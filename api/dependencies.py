"""
FastAPI dependencies
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from core.database import async_session_maker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """One session per request; rolled back if the handler raised"""
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
