"""PostgreSQL access for the Caps run ledger.

Only PostgresLedgerStore talks to the database. Every call opens its own
connection so ledger appends from different run threads never share a
cursor. Failures are logged and reported through the return value; the
ledger turns them into LedgerUnavailable.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

import psycopg2

import Caps.Helpers.logSettings as logLevel
from config import DatabaseConfig

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())


def connect_db():
    """Open a connection using DB_* / PG_* settings from the environment."""
    settings = DatabaseConfig.from_env()
    try:
        conn = psycopg2.connect(
            user=settings.user,
            password=settings.password,
            host=settings.host,
            port=settings.port,
            database=settings.name,
        )
    except psycopg2.Error as e:
        logger.log(
            level=50,
            msg=f"Cannot reach ledger database {settings.host}:{settings.port}/"
            f"{settings.name} as {settings.user}: {str(e)}",
        )
        raise ConnectionError(str(e))
    logger.log(
        level=10,
        msg=f"Connected to {settings.host}:{settings.port}/{settings.name}",
    )
    return conn


@contextmanager
def db_cursor(commit: bool = False) -> Iterator:
    """
    Yield a cursor on a fresh connection.

    Commits on a clean exit when ``commit`` is set, rolls back otherwise.
    The cursor and connection are always closed.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        yield cur
        if commit:
            conn.commit()
    except psycopg2.Error:
        conn.rollback()
        raise
    finally:
        cur.close()
        conn.close()


def fetch_rows(query: str, params: Optional[Tuple] = None) -> Optional[List[tuple]]:
    """
    Run a SELECT and return its rows.

    Args:
        query: SQL with %s placeholders
        params: Values for the placeholders

    Returns:
        List of row tuples, or None when the query failed
    """
    try:
        with db_cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall()
    except (psycopg2.Error, ConnectionError) as e:
        logger.log(level=30, msg=f"Ledger query failed: {str(e)}")
        return None


def execute(query: str, params: Optional[Tuple] = None) -> bool:
    """Run an INSERT or DDL statement and commit it. False on failure."""
    try:
        with db_cursor(commit=True) as cur:
            cur.execute(query, params)
        return True
    except psycopg2.IntegrityError as e:
        logger.log(level=40, msg=f"Ledger row rejected by constraint: {str(e)}")
        return False
    except (psycopg2.Error, ConnectionError) as e:
        logger.log(level=30, msg=f"Ledger write failed: {str(e)}")
        return False
