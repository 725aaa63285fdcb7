from __future__ import annotations

import contextlib
import io
import logging
from typing import Any, Dict, Optional

import qrcode

from config import LinkConfig

from .accounts import (
    AccountNotFoundError,
    AccountRegistry,
    MemoryAccountRegistry,
    PgAccountRegistry,
)
from .context import (
    PairingStatus,
    PendingPairing,
    SupervisorConflictError,
    SupervisorSettings,
    WorkerContext,
)
from .db import Database
from .metrics import LINK_PAIRING_TOTAL
from .notify import LogNotifier, Notifier, WebhookNotifier
from .pairing import PairingSupervisor
from .protocol import ConnectionHandle, ProtocolClient
from .restore import RestoreSummary, restore_all_on_boot
from .store import MemorySessionStore, PgSessionStore, SessionStore
from .telegram import TelegramProtocol

LOGGER = logging.getLogger("linkworker")


class PairingCodeNotFoundError(LookupError):
    """Raised when no pairing code is cached for a temporary token."""


class LinkManager:
    """Entry point for the HTTP layer and the process lifecycle."""

    def __init__(
        self,
        *,
        protocol: ProtocolClient,
        sessions: SessionStore,
        accounts: AccountRegistry,
        notifier: Notifier,
        settings: SupervisorSettings | None = None,
        database: Database | None = None,
    ) -> None:
        self._ctx = WorkerContext(
            protocol=protocol,
            sessions=sessions,
            accounts=accounts,
            notifier=notifier,
            settings=settings,
        )
        self._database = database
        self._started = False

    @property
    def context(self) -> WorkerContext:
        return self._ctx

    @property
    def accounts(self) -> AccountRegistry:
        return self._ctx.accounts

    async def start(self) -> RestoreSummary:
        if self._started:
            return RestoreSummary(restored=0, failed=0)
        self._started = True
        return await self.restore_all_on_boot()

    async def restore_all_on_boot(self) -> RestoreSummary:
        return await restore_all_on_boot(self._ctx)

    async def begin_pairing(self, temp_token: str, api_credential: str) -> None:
        ctx = self._ctx
        if ctx.supervisor(temp_token) is not None:
            raise SupervisorConflictError(temp_token)
        ctx.cleanup_finished_status()
        ctx.pending[temp_token] = PendingPairing(temp_token, api_credential)
        ctx.pairing_status[temp_token] = PairingStatus(temp_token)
        ctx.spawn(temp_token, PairingSupervisor(ctx, temp_token).run())
        LINK_PAIRING_TOTAL.labels("started").inc()
        LOGGER.info("stage=pairing_started temp=%s", temp_token)
        ctx.update_metrics()

    async def start_pairing(self, owner_id: str, api_credential: str) -> str:
        """Allocate a temporary identity for ``owner_id`` and begin pairing it."""

        temp_token = await self._ctx.accounts.create_pending_identity(owner_id)
        await self.begin_pairing(temp_token, api_credential)
        return temp_token

    def get_pairing_code(self, temp_token: str) -> Optional[str]:
        return self._ctx.pairing_codes.get(temp_token)

    def get_pairing_qr_png(self, temp_token: str) -> bytes:
        code = self.get_pairing_code(temp_token)
        if not code:
            raise PairingCodeNotFoundError(temp_token)
        return self._build_qr_png(code)

    def get_pairing_status(self, temp_token: str) -> Optional[PairingStatus]:
        self._ctx.cleanup_finished_status()
        return self._ctx.pairing_status.get(temp_token)

    def get_live_connection(self, identity_token: str) -> Optional[ConnectionHandle]:
        return self._ctx.registry.get(identity_token)

    async def delete_tenant(self, identity_token: str) -> bool:
        """Tear a tenant down without notifying anyone.

        Cancels its supervisor (including a pending reconnect delay), closes
        the live connection and removes the stored credentials.
        """

        ctx = self._ctx
        cancelled = await ctx.cancel(identity_token)
        handle = ctx.registry.remove(identity_token)
        if handle is not None:
            with contextlib.suppress(Exception):
                await handle.close()
        ctx.attempts.pop(identity_token, None)
        ctx.pairing_codes.pop(identity_token, None)
        ctx.pending.pop(identity_token, None)
        deleted = await ctx.sessions.delete(identity_token)
        with contextlib.suppress(AccountNotFoundError):
            await ctx.accounts.set_connected_flag(identity_token, False)
        ctx.update_metrics()
        LOGGER.info(
            "stage=tenant_deleted identity=%s cancelled=%s live=%s session_deleted=%s",
            identity_token,
            cancelled,
            handle is not None,
            deleted,
        )
        return cancelled or handle is not None or deleted

    async def shutdown(self) -> None:
        ctx = self._ctx
        await ctx.cancel_all()
        for token in list(ctx.registry):
            handle = ctx.registry.remove(token)
            if handle is not None:
                with contextlib.suppress(Exception):
                    await handle.close()
        await ctx.notifier.aclose()
        await ctx.protocol.aclose()
        if self._database is not None:
            await self._database.close()
        ctx.update_metrics()
        LOGGER.info("stage=shutdown")

    def stats_snapshot(self) -> Dict[str, Any]:
        return self._ctx.stats_snapshot()

    def _build_qr_png(self, code: str) -> bytes:
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_H,
            box_size=14,
            border=4,
        )
        qr.add_data(code)
        qr.make(fit=True)
        img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()


def build_manager(cfg: LinkConfig) -> LinkManager:
    database: Optional[Database] = None
    if cfg.store_backend == "postgres":
        if not cfg.database_url:
            raise RuntimeError("DATABASE_URL is required for the postgres store backend")
        database = Database(cfg.database_url)
        sessions: SessionStore = PgSessionStore(database)
        accounts: AccountRegistry = PgAccountRegistry(database)
    else:
        sessions = MemorySessionStore()
        accounts = MemoryAccountRegistry()

    notifier: Notifier
    if cfg.notify_url:
        notifier = WebhookNotifier(
            cfg.notify_url, token=cfg.webhook_secret, http_timeout=cfg.http_timeout
        )
    else:
        notifier = LogNotifier()

    protocol = TelegramProtocol(
        cfg.api_id,
        cfg.api_hash,
        device_model=cfg.device_model,
        system_version=cfg.system_version,
        app_version=cfg.app_version,
        lang_code=cfg.lang_code,
        system_lang_code=cfg.system_lang_code,
        qr_timeout=cfg.qr_ttl,
    )
    settings = SupervisorSettings(
        max_reconnect_attempts=cfg.max_reconnect_attempts,
        reconnect_delay=cfg.reconnect_delay,
        pairing_retry_delay=cfg.pairing_retry_delay,
        migration_timeout=cfg.migration_timeout,
        restore_concurrency=cfg.restore_concurrency,
    )
    LOGGER.info(
        "stage=manager_built store=%s notifier=%s",
        cfg.store_backend,
        notifier.__class__.__name__,
    )
    return LinkManager(
        protocol=protocol,
        sessions=sessions,
        accounts=accounts,
        notifier=notifier,
        settings=settings,
        database=database,
    )


__all__ = [
    "LinkManager",
    "PairingCodeNotFoundError",
    "build_manager",
]
