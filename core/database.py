"""
Database session management with SQLAlchemy async
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(database_url: str = None, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL (defaults to settings)"""
    return create_async_engine(
        database_url or settings.DATABASE_URL,
        echo=echo,
        poolclass=NullPool,  # one connection per session; batches run on separate sessions
        future=True
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


# Create async engine
engine = build_engine(echo=settings.ENVIRONMENT == "development")

# Create session factory
async_session_maker = build_session_maker(engine)


async def get_session() -> AsyncSession:
    """Get database session"""
    async with async_session_maker() as session:
        yield session


def dialect_name(session: AsyncSession) -> str:
    """Name of the SQL dialect the session is bound to ("postgresql", "sqlite", ...)"""
    return session.get_bind().dialect.name


def dialect_insert(session: AsyncSession, model):
    """
    INSERT construct supporting ON CONFLICT for the session's dialect.

    PostgreSQL and SQLite both implement ``on_conflict_do_nothing`` /
    ``on_conflict_do_update``; other backends are not supported.
    """
    name = dialect_name(session)
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Conditional insert not supported for dialect '{name}'")
    return insert(model)
