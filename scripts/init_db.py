"""
Create the operational store schema and seed the default refresh configs
"""

import asyncio
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import Database
from core.logging import setup_logging
from ingestion.config_store import RefreshConfigStore
import models  # noqa: F401  (registers every table on Base.metadata)
import logging

logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    database = Database.from_settings(settings)
    try:
        logger.info("Creating tables...")
        await database.create_all()
        logger.info("Tables created successfully.")

        async with database.session() as session:
            configs = await RefreshConfigStore(session).seed_defaults()
        logger.info(f"Refresh configs ready: {[c.qualified_name for c in configs]}")
    finally:
        await database.dispose()


if __name__ == "__main__":
    setup_logging(settings)
    asyncio.run(init_database())
