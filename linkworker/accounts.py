from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

import asyncpg

from .db import Database, DatabaseUnavailableError, affected_rows

LOGGER = logging.getLogger("linkworker.accounts")

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits


class AccountNotFoundError(LookupError):
    """Raised when an identity token has no tenant record."""


class AccountStoreError(RuntimeError):
    """Raised when the tenant record storage fails."""


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_TOKEN_ALPHABET[rem])
    return "".join(reversed(digits)) or "0"


def generate_token(prefix: str = "acc") -> str:
    stamp = _base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(16))
    return f"{prefix}_{stamp}_{random_part}"


@dataclass(slots=True)
class TenantAccount:
    identity_token: str
    owner_id: str
    phone_id: Optional[str] = None
    display_name: Optional[str] = None
    is_connected: bool = False
    is_pending: bool = False
    promoted_to: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AccountRegistry(ABC):
    """Tenant records the connection core reads and updates."""

    @abstractmethod
    async def create_pending_identity(self, owner_id: str) -> str:
        ...

    @abstractmethod
    async def promote_to_permanent(self, temp_token: str) -> str:
        """Allocate the permanent identity for a pending record.

        The pending record stays until :meth:`retire_pending` so a failed
        migration can be retried; promoting it again returns the identity
        issued the first time.
        """

    @abstractmethod
    async def retire_pending(self, temp_token: str) -> bool:
        ...

    @abstractmethod
    async def set_connection_metadata(
        self, identity_token: str, phone_id: Optional[str], display_name: Optional[str]
    ) -> None:
        ...

    @abstractmethod
    async def set_connected_flag(self, identity_token: str, connected: bool) -> bool:
        """Set ``is_connected`` and return the value it had before."""

    @abstractmethod
    async def get_connected_identities(self) -> List[str]:
        ...

    @abstractmethod
    async def get_account(self, identity_token: str) -> Optional[TenantAccount]:
        ...


class MemoryAccountRegistry(AccountRegistry):
    def __init__(self) -> None:
        self._accounts: Dict[str, TenantAccount] = {}
        self._lock = asyncio.Lock()

    def add(self, account: TenantAccount) -> TenantAccount:
        self._accounts[account.identity_token] = account
        return account

    async def create_pending_identity(self, owner_id: str) -> str:
        token = generate_token("tmp")
        async with self._lock:
            self._accounts[token] = TenantAccount(
                identity_token=token, owner_id=owner_id, is_pending=True
            )
        return token

    async def promote_to_permanent(self, temp_token: str) -> str:
        async with self._lock:
            pending = self._accounts.get(temp_token)
            if pending is None or not pending.is_pending:
                raise AccountNotFoundError(temp_token)
            if pending.promoted_to in self._accounts:
                return pending.promoted_to
            token = generate_token("acc")
            self._accounts[token] = replace(
                pending,
                identity_token=token,
                is_pending=False,
                is_connected=False,
                promoted_to=None,
                created_at=datetime.now(timezone.utc),
            )
            pending.promoted_to = token
        return token

    async def retire_pending(self, temp_token: str) -> bool:
        async with self._lock:
            account = self._accounts.get(temp_token)
            if account is None or not account.is_pending:
                return False
            del self._accounts[temp_token]
            return True

    async def set_connection_metadata(
        self, identity_token: str, phone_id: Optional[str], display_name: Optional[str]
    ) -> None:
        async with self._lock:
            account = self._accounts.get(identity_token)
            if account is None:
                raise AccountNotFoundError(identity_token)
            account.phone_id = phone_id
            account.display_name = display_name

    async def set_connected_flag(self, identity_token: str, connected: bool) -> bool:
        async with self._lock:
            account = self._accounts.get(identity_token)
            if account is None:
                raise AccountNotFoundError(identity_token)
            previous = account.is_connected
            account.is_connected = connected
            return previous

    async def get_connected_identities(self) -> List[str]:
        return [
            token
            for token, account in self._accounts.items()
            if account.is_connected and not account.is_pending
        ]

    async def get_account(self, identity_token: str) -> Optional[TenantAccount]:
        return self._accounts.get(identity_token)


class PgAccountRegistry(AccountRegistry):
    """``link_accounts`` table accessed through asyncpg."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def _run(self, operation: str, coro):
        try:
            return await coro
        except (asyncpg.PostgresError, OSError, DatabaseUnavailableError) as exc:
            LOGGER.error(
                "stage=account_store_failed operation=%s error=%s", operation, exc
            )
            raise AccountStoreError(f"{operation}_failed") from exc

    async def create_pending_identity(self, owner_id: str) -> str:
        token = generate_token("tmp")
        await self._run(
            "create_pending",
            self._db.execute(
                """
                INSERT INTO link_accounts (identity_token, owner_id, is_connected, is_pending, created_at)
                VALUES ($1, $2, false, true, now())
                """,
                token,
                owner_id,
            ),
        )
        return token

    async def promote_to_permanent(self, temp_token: str) -> str:
        token = generate_token("acc")
        row = await self._run(
            "promote",
            self._db.fetchrow(
                """
                WITH pending AS (
                    SELECT owner_id, promoted_to FROM link_accounts
                    WHERE identity_token = $1 AND is_pending
                    FOR UPDATE
                ), issued AS (
                    INSERT INTO link_accounts (identity_token, owner_id, is_connected, is_pending, created_at)
                    SELECT $2, owner_id, false, false, now() FROM pending
                    WHERE promoted_to IS NULL
                    RETURNING identity_token
                ), marked AS (
                    UPDATE link_accounts SET promoted_to = issued.identity_token
                    FROM issued WHERE link_accounts.identity_token = $1
                )
                SELECT COALESCE(promoted_to, $2) AS identity_token FROM pending
                """,
                temp_token,
                token,
            ),
        )
        if row is None:
            raise AccountNotFoundError(temp_token)
        return row["identity_token"]

    async def retire_pending(self, temp_token: str) -> bool:
        status = await self._run(
            "retire_pending",
            self._db.execute(
                "DELETE FROM link_accounts WHERE identity_token = $1 AND is_pending",
                temp_token,
            ),
        )
        return affected_rows(status) > 0

    async def set_connection_metadata(
        self, identity_token: str, phone_id: Optional[str], display_name: Optional[str]
    ) -> None:
        status = await self._run(
            "set_metadata",
            self._db.execute(
                """
                UPDATE link_accounts SET phone_id = $2, display_name = $3
                WHERE identity_token = $1
                """,
                identity_token,
                phone_id,
                display_name,
            ),
        )
        if affected_rows(status) == 0:
            raise AccountNotFoundError(identity_token)

    async def set_connected_flag(self, identity_token: str, connected: bool) -> bool:
        row = await self._run(
            "set_connected",
            self._db.fetchrow(
                """
                UPDATE link_accounts AS acc SET is_connected = $2
                FROM (
                    SELECT identity_token, is_connected FROM link_accounts
                    WHERE identity_token = $1 FOR UPDATE
                ) AS prev
                WHERE acc.identity_token = prev.identity_token
                RETURNING prev.is_connected AS previous
                """,
                identity_token,
                connected,
            ),
        )
        if row is None:
            raise AccountNotFoundError(identity_token)
        return bool(row["previous"])

    async def get_connected_identities(self) -> List[str]:
        rows = await self._run(
            "list_connected",
            self._db.fetch(
                """
                SELECT identity_token FROM link_accounts
                WHERE is_connected AND NOT is_pending
                ORDER BY created_at
                """
            ),
        )
        return [row["identity_token"] for row in rows]

    async def get_account(self, identity_token: str) -> Optional[TenantAccount]:
        row = await self._run(
            "get",
            self._db.fetchrow(
                """
                SELECT identity_token, owner_id, phone_id, display_name,
                       is_connected, is_pending, promoted_to, created_at
                FROM link_accounts WHERE identity_token = $1
                """,
                identity_token,
            ),
        )
        if row is None:
            return None
        return TenantAccount(
            identity_token=row["identity_token"],
            owner_id=row["owner_id"],
            phone_id=row["phone_id"],
            display_name=row["display_name"],
            is_connected=bool(row["is_connected"]),
            is_pending=bool(row["is_pending"]),
            promoted_to=row["promoted_to"],
            created_at=row["created_at"],
        )


__all__ = [
    "AccountNotFoundError",
    "AccountRegistry",
    "AccountStoreError",
    "MemoryAccountRegistry",
    "PgAccountRegistry",
    "TenantAccount",
    "generate_token",
]
