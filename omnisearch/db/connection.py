"""PostgreSQL database connection and schema setup."""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import psycopg2


def get_connection_string() -> str:
    """Get database connection string from environment."""
    return os.getenv(
        "DATABASE_URL",
        "postgresql://localhost:5432/omnisearch"
    )


@contextmanager
def get_connection() -> Generator:
    """Get a database connection context manager."""
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
    """Create the pgvector extension and the tables search reads from."""
    schema_path = Path(__file__).parent / "schema.sql"
    with open(schema_path) as f:
        schema_sql = f.read()

    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
