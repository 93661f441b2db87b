#!/usr/bin/env python3
"""
Clear Queues Script
Purges the three stage queues and drops every chunk lease.

Usage:
    python -m ingestflow.scripts.clear_queues
"""

import logging
import sys

import redis

from ingestflow.config import get_settings
from ingestflow.services.lease_service import RedisLeaseService
from ingestflow.tasks.celery_app import app
from ingestflow.tasks.queue import DATA_PROCESSING_QUEUE, FILE_CHUNKING_QUEUE, FILE_UPLOAD_QUEUE

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

QUEUES = [FILE_UPLOAD_QUEUE, FILE_CHUNKING_QUEUE, DATA_PROCESSING_QUEUE]


def clear_queue(conn, queue_name: str) -> int:
    """Purge one queue and return the number of discarded messages."""
    logger.info(f"Clearing queue: {queue_name}")
    try:
        purged = conn.default_channel.queue_purge(queue_name) or 0
    except conn.channel_errors:
        # Queue was never declared
        purged = 0
    logger.info(f"Queue {queue_name} cleared ({purged} messages)")
    return purged


def main():
    """Main function to clear queues and leases."""
    settings = get_settings()

    try:
        with app.connection_for_write() as conn:
            total = sum(clear_queue(conn, name) for name in QUEUES)

        leases = RedisLeaseService(redis.Redis.from_url(settings.redis_url), settings.lock_key_prefix)
        deleted = leases.delete_all()
        logger.info(f"Deleted {deleted} lease key(s)")

        logger.info(f"All queues cleared ({total} messages)")
    except (redis.RedisError, OSError) as e:
        logger.error(f"Error clearing queues: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
