"""PostgreSQL database connection and schema setup."""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import psycopg2

DEFAULT_DATABASE_URL = "postgresql://localhost:5432/signal_intel"


def get_connection_string() -> str:
    """Get database connection string from environment."""
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


@contextmanager
def get_connection() -> Generator:
    """Get a database connection context manager (commit on success, rollback on error)."""
    conn = psycopg2.connect(get_connection_string())
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    """Initialize database schema."""
    schema_path = Path(__file__).parent / "schema.sql"
    with open(schema_path) as f:
        schema_sql = f.read()

    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
