"""
Database session management with SQLAlchemy async
"""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def _connect_args(database_url: str) -> dict:
    """Bound every lock wait and statement on PostgreSQL connections"""
    if database_url.startswith("postgresql+asyncpg"):
        return {
            "server_settings": {
                "lock_timeout": str(settings.DB_LOCK_TIMEOUT_MS),
                "statement_timeout": str(settings.DB_STATEMENT_TIMEOUT_MS),
            }
        }
    return {}


def build_engine(database_url: str = settings.DATABASE_URL, echo: bool = False):
    return create_async_engine(
        database_url,
        echo=echo,
        poolclass=NullPool,
        connect_args=_connect_args(database_url),
        future=True
    )


def build_session_maker(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


# Create async engine
engine = build_engine(settings.DATABASE_URL, echo=settings.ENVIRONMENT == "development")

# Create session factory
async_session_maker = build_session_maker(engine)


async def get_session() -> AsyncSession:
    """Get database session"""
    async with async_session_maker() as session:
        yield session


def dialect_insert(session: AsyncSession):
    """
    ``insert`` construct of the session's dialect.

    Both PostgreSQL and SQLite support ``on_conflict_do_update`` with
    ``excluded`` and RETURNING; the generic ``insert`` does not.
    """
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upserts are not supported on {dialect_name}")
