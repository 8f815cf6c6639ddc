"""
Postgres schema bootstrap for the credit ledger.
"""

import logging
from pathlib import Path

import asyncpg

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).resolve().parent / "schema.sql"


async def init_schema(conn: asyncpg.Connection) -> None:
    """Initialize ledger schema and procedures.

    Designed to be idempotent and safe on startup. In the hosted deployment the
    schema is owned by the platform's migrations; this is for local and test databases.
    """
    sql = SCHEMA_FILE.read_text(encoding="utf-8")
    if not sql.strip():
        return
    async with conn.transaction():
        await conn.execute(sql)
    logger.info("Ledger schema applied from %s", SCHEMA_FILE.name)
