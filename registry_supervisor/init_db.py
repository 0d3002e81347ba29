#!/usr/bin/env python3
"""
Initialize a local SQLite discovery store.

In production the data feed table lives in the flags indexer's PostgreSQL
schema and is owned by ponder. For local runs and tests the same table is
created in a SQLite file with simple logic:
- If database file exists, check if it has tables
- If database file doesn't exist or is empty, create it and initialize tables
"""

import logging
import os
import sqlite3
import sys

from .db_utils import get_discovery_table, is_postgres_url
from .config import get_db_url

# Configure logging
logger = logging.getLogger(__name__)


def init_db(db_file=None):
    """
    Create the data feed table in a SQLite discovery store if needed.

    Args:
        db_file (str): SQLite file path, defaults to the configured store
    """
    logger.info("=" * 80)
    logger.info("Checking discovery store")

    db_file = db_file or get_db_url()
    if not db_file:
        logger.error("Discovery store location not configured")
        sys.exit(1)

    if is_postgres_url(db_file):
        logger.info("Discovery store is PostgreSQL, tables are managed by ponder")
        return

    # Check if database file exists and has tables
    file_exists = os.path.exists(db_file)
    tables_exist = False

    if file_exists:
        conn = sqlite3.connect(db_file)
        cursor = conn.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = cursor.fetchall()
        conn.close()

        tables_exist = len(tables) > 0

    # If database exists and has tables, do nothing
    if file_exists and tables_exist:
        logger.info(
            f"Database file {db_file} already exists and has tables, nothing to do"
        )
        return

    if file_exists:
        logger.info(f"Database file {db_file} exists but is empty, initializing tables")
    else:
        logger.info(f"Creating new database file: {db_file}")

    # Connect to database (this will create the file if it doesn't exist)
    conn = sqlite3.connect(db_file)
    cursor = conn.cursor()
    table = get_discovery_table(db_file)

    try:
        logger.info("Initializing discovery store tables")

        cursor.executescript(f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id TEXT PRIMARY KEY,
            address TEXT NOT NULL,
            aggregator_address TEXT,
            description TEXT,
            chain_id INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            ignored BOOLEAN NOT NULL DEFAULT FALSE,
            created_at INTEGER NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_{table}_status
            ON {table} (status, ignored);
        """)

        conn.commit()
        logger.info("Discovery store initialized")

    except sqlite3.Error as e:
        logger.error(f"Error initializing discovery store: {e}")
        conn.rollback()
        raise
    finally:
        conn.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
