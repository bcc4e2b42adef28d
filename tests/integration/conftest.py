"""Integration test fixtures.

Applies the member and visit_event migrations against an ephemeral
PostgreSQL database provided by pytest-postgresql.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_member.sql",
    PROJECT_ROOT / "migrations" / "0002_visit_event.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (conn, dsn) with the schema applied.

    Function scope gives every test a fresh database.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def add_member(db_conn):
    """Return a callable that inserts one member row directly and commits."""
    conn, _ = db_conn

    def _add(
        member_id: str,
        household_id: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        address_line1: str | None = None,
        city: str | None = "Austin",
        latitude: float | None = 30.2672,
        longitude: float | None = -97.7431,
        last_status: str = "Unvisited",
    ) -> None:
        conn.execute(
            """
            INSERT INTO member
              (id, household_id, first_name, last_name, address_line1, city,
               state, zip, latitude, longitude, last_status)
            VALUES (%s, %s, %s, %s, %s, %s, 'TX', '78701', %s, %s, %s)
            """,
            (member_id, household_id, first_name, last_name, address_line1,
             city, latitude, longitude, last_status),
        )
        conn.commit()

    return _add
