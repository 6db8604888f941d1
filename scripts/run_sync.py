"""
Run one refresh cycle over every due table and print the cycle report.

Usage:
    python scripts/run_sync.py
    python scripts/run_sync.py --cleanup-configs asin_performance_data search_query_performance
"""

import argparse
import asyncio
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.exceptions import ConfigurationError
from core.logging import setup_logging
from ingestion.config_store import RefreshConfigStore
from ingestion.service import build_service
import logging

logger = logging.getLogger(__name__)


async def run_sync(cleanup_tables=None) -> int:
    service = build_service(settings)
    try:
        await service.initialize()

        if cleanup_tables:
            async with service.database.session() as session:
                removed = await RefreshConfigStore(session).cleanup_configs(cleanup_tables)
            logger.info(f"Removed configs: {removed or 'none'}")

        try:
            report = await service.run_cycle()
        except ConfigurationError as e:
            logger.error(f"Refresh cycle aborted: {e}")
            return 2

        print(report.model_dump_json(indent=2))
        return 1 if report.count("failed") else 0
    finally:
        await service.close()


def main():
    parser = argparse.ArgumentParser(description="Run one search-query sync refresh cycle")
    parser.add_argument(
        "--cleanup-configs",
        nargs="+",
        metavar="TABLE",
        help="Remove refresh configs for tables not in this list before running",
    )
    args = parser.parse_args()

    setup_logging(settings)
    sys.exit(asyncio.run(run_sync(args.cleanup_configs)))


if __name__ == "__main__":
    main()
