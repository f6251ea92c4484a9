"""Integration test fixtures providing ephemeral PostgreSQL via testcontainers.

The PostgresContainer is session-scoped so Docker starts once per run.
The cache schema is recreated for every test (function-scoped ``store``).
"""

from __future__ import annotations

import re
from pathlib import Path

import asyncpg
import pytest
from pydantic import SecretStr
from testcontainers.postgres import PostgresContainer

from nostrsync.core.pool import DatabaseConfig, Pool, PoolConfig
from nostrsync.core.store import LocalCacheStore


SQL_DIR = Path(__file__).parents[2] / "deployments" / "nostrsync" / "postgres" / "init"


def _has_statements(sql: str) -> bool:
    """Whether *sql* holds anything besides comments."""
    sql = re.sub(r"/\*.*?\*/", "", sql, flags=re.DOTALL)
    sql = re.sub(r"--[^\n]*", "", sql)
    return bool(sql.strip())


# ---------------------------------------------------------------------------
# Session-scoped container
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def pg_container():
    with PostgresContainer("postgres:16-alpine") as pg:
        yield pg


@pytest.fixture(scope="session")
def pg_dsn(pg_container: PostgresContainer) -> dict[str, str | int]:
    return {
        "host": pg_container.get_container_host_ip(),
        "port": int(pg_container.get_exposed_port(5432)),
        "database": pg_container.dbname,
        "user": pg_container.username,
        "password": pg_container.password,
    }


# ---------------------------------------------------------------------------
# Function-scoped store with a fresh schema
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(pg_dsn: dict[str, str | int]):
    """Connected LocalCacheStore over an empty cache schema."""
    host = str(pg_dsn["host"])
    port = int(pg_dsn["port"])
    database = str(pg_dsn["database"])
    user = str(pg_dsn["user"])
    password = str(pg_dsn["password"])

    conn = await asyncpg.connect(
        host=host, port=port, database=database, user=user, password=password
    )
    try:
        await conn.execute("DROP SCHEMA public CASCADE")
        await conn.execute("CREATE SCHEMA public")
        for sql_file in sorted(SQL_DIR.glob("*.sql")):
            sql = sql_file.read_text()
            if _has_statements(sql):
                await conn.execute(sql)
    finally:
        await conn.close()

    pool = Pool(
        config=PoolConfig(
            database=DatabaseConfig(
                host=host,
                port=port,
                database=database,
                user=user,
                password=SecretStr(password),
            ),
        )
    )
    async with LocalCacheStore(pool=pool) as cache_store:
        yield cache_store
