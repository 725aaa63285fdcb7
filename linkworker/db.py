from __future__ import annotations

import logging
from typing import Any, Optional

import asyncpg

_log = logging.getLogger("linkworker.db")


class DatabaseUnavailableError(RuntimeError):
    """Raised when PostgreSQL is required but unavailable."""


def normalize_dsn(raw: str) -> str:
    # DSN: accept the SQLAlchemy style postgresql+asyncpg:// and normalise it
    return (raw or "").strip().replace("postgresql+asyncpg://", "postgresql://")


class Database:
    """Lazily created asyncpg pool shared by the Postgres-backed stores."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self._dsn = normalize_dsn(dsn)
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        if not self._dsn:
            raise DatabaseUnavailableError("database_url_missing")
        try:
            self._pool = await asyncpg.create_pool(
                self._dsn, min_size=self._min_size, max_size=self._max_size
            )
        except (OSError, asyncpg.PostgresError) as exc:
            _log.error("stage=db_pool_failed error=%s", exc)
            raise DatabaseUnavailableError(str(exc)) from exc
        return self._pool

    async def execute(self, sql: str, *args: Any) -> str:
        pool = await self._ensure_pool()
        async with pool.acquire() as con:
            return await con.execute(sql, *args)

    async def fetchrow(self, sql: str, *args: Any) -> Optional[asyncpg.Record]:
        pool = await self._ensure_pool()
        async with pool.acquire() as con:
            return await con.fetchrow(sql, *args)

    async def fetch(self, sql: str, *args: Any) -> list[asyncpg.Record]:
        pool = await self._ensure_pool()
        async with pool.acquire() as con:
            return await con.fetch(sql, *args)

    async def fetchval(self, sql: str, *args: Any) -> Any:
        pool = await self._ensure_pool()
        async with pool.acquire() as con:
            return await con.fetchval(sql, *args)

    async def close(self) -> None:
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        await pool.close()


def affected_rows(status: str) -> int:
    """Extract the row count from an asyncpg command tag such as ``INSERT 0 1``."""

    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except (TypeError, ValueError):
        return 0


__all__ = ["Database", "DatabaseUnavailableError", "affected_rows", "normalize_dsn"]
