"""Postgres pool and aiosql query registry for the scrapenation schema."""

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import aiosql
import asyncpg
from dotenv import load_dotenv
from loguru import logger

load_dotenv()

SCHEMA = "scrapenation"
SCHEMA_PATH = Path(__file__).parent / "schema.sql"

# Every .sql file in db/queries/ becomes queries.<name>
queries = aiosql.from_path(Path(__file__).parent / "queries", "asyncpg")

_pool: Optional[asyncpg.Pool] = None


def connection_settings() -> Dict[str, Any]:
    """DATABASE_URL when set (deployed), else SCRAPENATION_DB_* (local)."""
    url = os.getenv("DATABASE_URL")
    if url:
        parsed = urlparse(url)
        return {
            "host": parsed.hostname,
            "port": parsed.port or 5432,
            "database": parsed.path.lstrip("/"),
            "user": parsed.username,
            "password": parsed.password,
        }
    return {
        "host": os.getenv("SCRAPENATION_DB_HOST", "localhost"),
        "port": int(os.getenv("SCRAPENATION_DB_PORT", "5432")),
        "database": os.getenv("SCRAPENATION_DB_NAME", "scrapenation"),
        "user": os.getenv("SCRAPENATION_DB_USER"),
        "password": os.getenv("SCRAPENATION_DB_PASSWORD"),
    }


async def _set_search_path(conn: asyncpg.Connection) -> None:
    await conn.execute(f"SET search_path TO {SCHEMA}, public")


async def init_db() -> asyncpg.Pool:
    """Create the pool on first use; later calls return the same pool."""
    global _pool
    if _pool is None:
        settings = connection_settings()
        _pool = await asyncpg.create_pool(
            **settings,
            min_size=1,
            max_size=int(os.getenv("SCRAPENATION_DB_POOL_SIZE", "10")),
            command_timeout=60,
            max_inactive_connection_lifetime=300,
            statement_cache_size=0,  # pgbouncer/Supavisor transaction mode
            init=_set_search_path,
        )
        logger.debug(f"DB pool ready ({settings['host']}:{settings['port']}/{settings['database']})")
    return _pool


@asynccontextmanager
async def get_conn():
    pool = await init_db()
    async with pool.acquire() as conn:
        # Poolers can hand back a connection with a reset session
        await _set_search_path(conn)
        yield conn


@asynccontextmanager
async def get_transaction():
    async with get_conn() as conn:
        async with conn.transaction():
            yield conn


async def apply_schema() -> None:
    """Create the schema and tables if they do not exist yet."""
    async with get_conn() as conn:
        await conn.execute(SCHEMA_PATH.read_text())
    logger.info(f"Applied {SCHEMA_PATH.name}")


async def close_db() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
