#!/usr/bin/env python3
"""
Database Initialization Script
Creates the upload, chunk, error and store tables.

Usage:
    python -m ingestflow.scripts.init_db
"""

import logging

from sqlalchemy import inspect

from ingestflow.db.session import get_engine, init_db

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def main():
    engine = get_engine()
    init_db(engine)
    logger.info(f"Tables ready: {', '.join(sorted(inspect(engine).get_table_names()))}")


if __name__ == "__main__":
    main()
