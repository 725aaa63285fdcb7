"""Durable per-identity credential storage.

Every ``save`` writes the full credential snapshot (overwrite, never merge).
Two saves for the same identity race on a last-write-wins basis; callers
serialize them through the single supervisor that owns the identity.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import asyncpg

from . import codec
from .db import Database, DatabaseUnavailableError, affected_rows

LOGGER = logging.getLogger("linkworker.store")


class SessionStoreError(RuntimeError):
    """Raised when the backing storage fails an operation."""


class SessionNotFoundError(SessionStoreError):
    """Raised by ``copy`` when the source identity has no stored session."""


def _dump(credentials: Any) -> str:
    return json.dumps(codec.encode(credentials), separators=(",", ":"))


def _load(raw: Any) -> Any:
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise codec.CredentialCodecError(f"invalid_json:{exc}") from exc
    return codec.decode(raw)


class SessionStore(ABC):
    """Interface shared by the Postgres and in-memory implementations."""

    @abstractmethod
    async def load(self, identity_token: str) -> Optional[Any]:
        """Return decoded credentials, ``None`` when absent.

        Raises :class:`~linkworker.codec.CredentialCodecError` when the stored
        blob cannot be decoded.
        """

    @abstractmethod
    async def save(self, identity_token: str, credentials: Any) -> None:
        ...

    @abstractmethod
    async def exists(self, identity_token: str) -> bool:
        ...

    @abstractmethod
    async def delete(self, identity_token: str) -> bool:
        """Delete the session; ``False`` when nothing was stored."""

    @abstractmethod
    async def copy(self, from_token: str, to_token: str) -> None:
        """Copy the exact stored blob, overwriting any destination record."""


class MemorySessionStore(SessionStore):
    """Process-local store keeping the serialized JSON text per identity."""

    def __init__(self) -> None:
        self._records: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def load(self, identity_token: str) -> Optional[Any]:
        record = self._records.get(identity_token)
        if record is None:
            return None
        return _load(record[0])

    async def save(self, identity_token: str, credentials: Any) -> None:
        blob = _dump(credentials)
        async with self._lock:
            self._records[identity_token] = (blob, time.time())

    async def exists(self, identity_token: str) -> bool:
        return identity_token in self._records

    async def delete(self, identity_token: str) -> bool:
        async with self._lock:
            return self._records.pop(identity_token, None) is not None

    async def copy(self, from_token: str, to_token: str) -> None:
        async with self._lock:
            record = self._records.get(from_token)
            if record is None:
                raise SessionNotFoundError(from_token)
            self._records[to_token] = (record[0], time.time())

    def raw_blob(self, identity_token: str) -> Optional[str]:
        record = self._records.get(identity_token)
        return record[0] if record else None


class PgSessionStore(SessionStore):
    """``link_sessions`` table accessed through asyncpg."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def _run(self, operation: str, coro):
        try:
            return await coro
        except (asyncpg.PostgresError, OSError, DatabaseUnavailableError) as exc:
            LOGGER.error(
                "stage=session_store_failed operation=%s error=%s", operation, exc
            )
            raise SessionStoreError(f"{operation}_failed") from exc

    async def load(self, identity_token: str) -> Optional[Any]:
        row = await self._run(
            "load",
            self._db.fetchrow(
                "SELECT credential_blob FROM link_sessions WHERE identity_token = $1",
                identity_token,
            ),
        )
        if row is None:
            return None
        return _load(row["credential_blob"])

    async def save(self, identity_token: str, credentials: Any) -> None:
        blob = _dump(credentials)
        await self._run(
            "save",
            self._db.execute(
                """
                INSERT INTO link_sessions (identity_token, credential_blob, created_at, updated_at)
                VALUES ($1, $2::jsonb, now(), now())
                ON CONFLICT (identity_token)
                DO UPDATE SET credential_blob = EXCLUDED.credential_blob, updated_at = now()
                """,
                identity_token,
                blob,
            ),
        )

    async def exists(self, identity_token: str) -> bool:
        value = await self._run(
            "exists",
            self._db.fetchval(
                "SELECT EXISTS(SELECT 1 FROM link_sessions WHERE identity_token = $1)",
                identity_token,
            ),
        )
        return bool(value)

    async def delete(self, identity_token: str) -> bool:
        status = await self._run(
            "delete",
            self._db.execute(
                "DELETE FROM link_sessions WHERE identity_token = $1", identity_token
            ),
        )
        return affected_rows(status) > 0

    async def copy(self, from_token: str, to_token: str) -> None:
        status = await self._run(
            "copy",
            self._db.execute(
                """
                INSERT INTO link_sessions (identity_token, credential_blob, created_at, updated_at)
                SELECT $2, credential_blob, now(), now()
                FROM link_sessions WHERE identity_token = $1
                ON CONFLICT (identity_token)
                DO UPDATE SET credential_blob = EXCLUDED.credential_blob, updated_at = now()
                """,
                from_token,
                to_token,
            ),
        )
        if affected_rows(status) == 0:
            raise SessionNotFoundError(from_token)


__all__ = [
    "MemorySessionStore",
    "PgSessionStore",
    "SessionNotFoundError",
    "SessionStore",
    "SessionStoreError",
]
