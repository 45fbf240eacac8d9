import asyncio
import logging
from typing import List, Optional

from core.config import settings
from core.database import build_engine
from core.logging import setup_logging
import models  # noqa: F401  registers every table on Base.metadata
from models.base import Base

logger = logging.getLogger(__name__)


async def init_database(database_url: Optional[str] = None) -> List[str]:
    """Create all tables that do not exist yet; returns the table names"""
    logger.info("Connecting to database...")
    engine = build_engine(database_url or settings.DATABASE_URL)

    try:
        async with engine.begin() as conn:
            logger.info("Creating tables...")
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Tables created successfully.")
    finally:
        await engine.dispose()

    return sorted(Base.metadata.tables)


if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database())
