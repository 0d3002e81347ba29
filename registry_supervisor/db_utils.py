"""
Database utility functions for the registry supervisor.

This module provides functions for talking to the discovery store, including:
- Connecting to PostgreSQL (the flags indexer's database) or SQLite
- Choosing the parameter placeholder for the connected driver
- Executing read queries and returning rows as dictionaries
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional, Sequence

import psycopg2

from .config import DB_CONNECT_TIMEOUT, FLAGS_SCHEMA, DISCOVERY_TABLE, get_db_url

logger = logging.getLogger(__name__)

POSTGRES_SCHEMES = ("postgres://", "postgresql://")


def is_postgres_url(db_url: Optional[str]) -> bool:
    """
    Check whether a discovery store location is a PostgreSQL connection string.

    Args:
        db_url (str): Connection string or SQLite file path

    Returns:
        bool: True for postgres:// and postgresql:// URLs
    """
    return bool(db_url) and db_url.startswith(POSTGRES_SCHEMES)


def get_db_connection(db_url: Optional[str] = None):
    """
    Create and return a connection to the discovery store.

    Args:
        db_url (str): Connection string or SQLite file path, defaults to config

    Returns:
        Connection: psycopg2 connection for PostgreSQL URLs, sqlite3 otherwise
    """
    db_url = db_url or get_db_url()
    if is_postgres_url(db_url):
        return psycopg2.connect(db_url, connect_timeout=DB_CONNECT_TIMEOUT)

    conn = sqlite3.connect(db_url)
    conn.row_factory = sqlite3.Row  # Return rows as dictionaries
    return conn


def get_placeholder(conn) -> str:
    """Get the query parameter placeholder for the connection's driver."""
    return "?" if isinstance(conn, sqlite3.Connection) else "%s"


def get_discovery_table(db_url: Optional[str] = None) -> str:
    """
    Get the name of the data feed table written by the flags indexer.

    The flags indexer writes into its own PostgreSQL schema; SQLite stores
    have no schemas.
    """
    if DISCOVERY_TABLE:
        return DISCOVERY_TABLE
    if is_postgres_url(db_url or get_db_url()):
        return f"{FLAGS_SCHEMA}.data_feed"
    return "data_feed"


def fetch_rows(conn, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
    """
    Execute a read query and return every row as a dictionary.

    Args:
        conn: Open database connection
        query (str): SQL query to execute
        params (tuple): Parameters for the query

    Returns:
        list: Rows keyed by column name
    """
    cursor = conn.cursor()
    try:
        cursor.execute(query, tuple(params))
        columns = [col[0] for col in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]
    finally:
        cursor.close()
