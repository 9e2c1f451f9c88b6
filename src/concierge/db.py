"""Postgres access for concierge: database provisioning and the asyncpg pool.

Only reminder markers live in Postgres, so the daemon keeps one small pool
and runs the ``core`` migration chain against it at startup.
"""

from __future__ import annotations

import logging
import os
from typing import Any
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

logger = logging.getLogger(__name__)

SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})


def _ssl_mode(raw: str | None) -> str | None:
    value = (raw or "").strip().lower()
    if not value:
        return None
    if value not in SSL_MODES:
        logger.warning("Ignoring unknown sslmode %r", raw)
        return None
    return value


def db_params_from_env() -> dict[str, Any]:
    """Connection settings from ``DATABASE_URL`` or the ``POSTGRES_*`` variables."""
    url = os.environ.get("DATABASE_URL")
    if url:
        parsed = urlparse(url)
        return {
            "host": parsed.hostname or "localhost",
            "port": parsed.port or 5432,
            "user": parsed.username or "concierge",
            "password": parsed.password or "concierge",
            "ssl": _ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0]),
        }
    env = os.environ
    return {
        "host": env.get("POSTGRES_HOST", "localhost"),
        "port": int(env.get("POSTGRES_PORT", "5432")),
        "user": env.get("POSTGRES_USER", "concierge"),
        "password": env.get("POSTGRES_PASSWORD", "concierge"),
        "ssl": _ssl_mode(env.get("POSTGRES_SSLMODE")),
    }


class Database:
    """One named database and its connection pool."""

    def __init__(
        self,
        db_name: str,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str) -> Database:
        return cls(db_name=db_name, **db_params_from_env())

    @property
    def url(self) -> str:
        """Libpq URL used by the Alembic runner."""
        auth = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}"
        url = f"postgresql://{auth}@{self.host}:{self.port}/{self.db_name}"
        return f"{url}?sslmode={self.ssl}" if self.ssl else url

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl:
            kwargs["ssl"] = self.ssl
        return kwargs

    async def provision(self) -> None:
        """Create the database through the ``postgres`` maintenance DB if it is missing."""
        conn = await asyncpg.connect(**self._connect_kwargs("postgres"))
        try:
            if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", self.db_name):
                return
            # CREATE DATABASE does not accept bind parameters.
            quoted = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created database %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        self.pool = await asyncpg.create_pool(
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            **self._connect_kwargs(self.db_name),
        )
        logger.info("Connected to database %s", self.db_name)
        return self.pool

    async def fetchval(self, query: str, *args: Any) -> Any:
        if self.pool is None:
            raise RuntimeError(f"Database '{self.db_name}' has no active connection pool")
        return await self.pool.fetchval(query, *args)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("Closed pool for database %s", self.db_name)
