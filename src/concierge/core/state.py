"""Durable key/value rows in the ``state`` table (JSONB values).

Reminder markers are the only tenant today. Keys are namespaced by a prefix
such as ``reminder::`` so unrelated rows can share the table.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)


def load_jsonb(raw: Any) -> Any:
    """Decode a JSONB column; asyncpg hands these back as text without a codec."""
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


async def state_get(pool: asyncpg.Pool, key: str) -> Any | None:
    raw = await pool.fetchval("SELECT value FROM state WHERE key = $1", key)
    return None if raw is None else load_jsonb(raw)


async def state_set(pool: asyncpg.Pool, key: str, value: Any) -> int:
    """Insert or replace *key*; returns the row version after the write."""
    return await pool.fetchval(
        """
        INSERT INTO state AS s (key, value)
        VALUES ($1, $2::jsonb)
        ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value, updated_at = now(), version = s.version + 1
        RETURNING version
        """,
        key,
        json.dumps(value),
    )


async def state_delete(pool: asyncpg.Pool, key: str) -> None:
    await pool.execute("DELETE FROM state WHERE key = $1", key)


async def state_scan(pool: asyncpg.Pool, prefix: str = "") -> list[tuple[str, Any]]:
    """``(key, value)`` pairs whose key starts with *prefix*, ordered by key."""
    pattern = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
    rows = await pool.fetch(
        "SELECT key, value FROM state WHERE key LIKE $1 ORDER BY key", pattern
    )
    logger.debug("State scan for prefix %r returned %d row(s)", prefix, len(rows))
    return [(row["key"], load_jsonb(row["value"])) for row in rows]
