"""Integration test fixtures.

Applies every migration under migrations/ against an ephemeral PostgreSQL
database provided by pytest-postgresql before each integration test.  The
whole directory is skipped when no PostgreSQL server binaries are installed.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable

import psycopg
import pytest
from pytest_postgresql import factories

from labeling_etl.store import PostgresProblemStore, open_pool

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = sorted((PROJECT_ROOT / "migrations").glob("*.sql"))

if shutil.which("pg_ctl") is None and shutil.which("pg_config") is None:
    collect_ignore_glob = ["test_*.py"]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture: applies all migrations per test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_dsn(postgresql):
    """Return a DSN for a database with the schema applied.

    Each test gets a fresh schema via function scope so tests are isolated.
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
    finally:
        conn.close()
    return dsn


@pytest.fixture
def run_store(db_dsn) -> Callable[[Callable[[PostgresProblemStore], Awaitable[Any]]], Any]:
    """Run ``scenario(store)`` on a fresh pool and return its result."""

    def run(scenario):
        async def go():
            pool = await open_pool(db_dsn, max_size=4)
            try:
                return await scenario(PostgresProblemStore(pool))
            finally:
                await pool.close()

        return asyncio.run(go())

    return run
