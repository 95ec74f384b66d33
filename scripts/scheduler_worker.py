"""
Scheduler Worker - expires idle sessions and exports daily summaries

Usage:
    python scripts/scheduler_worker.py
"""
import asyncio
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import redis
import structlog

from visitrack.core.config import settings
from visitrack.core.database import Database
from visitrack.services.scheduler import SweepScheduler

logger = structlog.get_logger()


async def run():
    """Main worker loop"""
    database = Database(settings.database_url)
    redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    scheduler = SweepScheduler(database, redis_client, settings)

    logger.info("worker_started", interval_seconds=settings.sweep_interval_seconds)
    print("Scheduler Worker started. Press Ctrl+C to stop.")

    try:
        while True:
            result = await scheduler.run_once()
            if result["ran"]:
                print(f"Tick: {result['expired']} sessions expired, export {'written' if result['exported'] else 'up to date'}")

            await asyncio.sleep(settings.sweep_interval_seconds)
    finally:
        await database.dispose()
        redis_client.close()


def main():
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("worker_stopped")
        print("\nWorker stopped.")


if __name__ == "__main__":
    main()
