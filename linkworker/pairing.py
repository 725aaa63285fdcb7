from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from .accounts import AccountStoreError
from .context import ABANDONED, FAILED, LINKED, MIGRATING, PairingStatus, WorkerContext
from .metrics import LINK_PAIRING_TOTAL, LINK_RECONNECT_ATTEMPTS_TOTAL
from .protocol import OPEN, ConnectionHandle, LinkedIdentity, is_terminal
from .reconnect import EventPump, ReconnectionSupervisor, close_cause
from .store import SessionStoreError

LOGGER = logging.getLogger("linkworker.pairing")


class PairingError(RuntimeError):
    """Pairing could not be completed."""


class MigrationError(PairingError):
    """Moving the paired session onto its permanent identity failed."""


class MigrationTimeoutError(MigrationError):
    """The permanent connection did not open before the migration deadline."""


class PairingSupervisor(EventPump):
    """Drives one pairing attempt from the temporary token to a linked identity.

    Pairing-phase disconnects follow the same bounded retry policy as steady
    state.  Once the external party authenticates, the ephemeral connection is
    closed with its final credential snapshot persisted, the snapshot is
    copied to a freshly issued permanent token and a new connection is opened
    under that token.  Only when the new connection opens is it registered and
    handed to a :class:`ReconnectionSupervisor` running in the same task.
    """

    def __init__(self, ctx: WorkerContext, temp_token: str) -> None:
        super().__init__(ctx, temp_token)
        status = ctx.pairing_status.get(temp_token)
        if status is None:
            status = ctx.pairing_status[temp_token] = PairingStatus(temp_token)
        self.status = status
        self._handle: Optional[ConnectionHandle] = None

    async def run(self) -> None:
        try:
            handle = await self._pair()
            if handle is not None:
                await self._link(handle)
        except asyncio.CancelledError:
            self._forget_pending()
            if not self.status.finished:
                self.status.transition(ABANDONED, error="cancelled")
            raise
        except MigrationTimeoutError as exc:
            LOGGER.error("stage=migration_timeout temp=%s identity=%s", self.identity_token, exc)
            self._fail("migration_timeout")
        except MigrationError as exc:
            LOGGER.error("stage=migration_failed temp=%s error=%s", self.identity_token, exc)
            self._fail(str(exc) or "migration_failed")
        except Exception as exc:
            LOGGER.exception("stage=pairing_failed temp=%s", self.identity_token)
            self._fail(str(exc) or exc.__class__.__name__)
        finally:
            if self._handle is not None:
                await self._drop(self._handle)
            self._ctx.update_metrics()

    async def _pair(self) -> Optional[ConnectionHandle]:
        ctx = self._ctx
        token = self.identity_token
        settings = ctx.settings
        while True:
            try:
                credentials = await self.load_credentials()
                self._handle = await self.open(credentials)
            except Exception as exc:
                LOGGER.error("stage=pairing_open_failed temp=%s error=%s", token, exc)
                cause = None
                reason = "open_failed"
            else:
                LOGGER.info("stage=pairing_opened temp=%s resumed=%s", token, credentials is not None)
                event = await self.next_transition(self._handle)
                if event.connection == OPEN:
                    ctx.attempts.pop(token, None)
                    return self._handle
                await self._drop(self._handle)
                cause = close_cause(event)
                reason = cause.reason

            if is_terminal(cause):
                await self._abandon(reason)
                return None
            attempts = ctx.attempts.get(token, 0)
            if attempts >= settings.max_reconnect_attempts:
                await self._abandon("retries_exhausted")
                return None
            ctx.attempts[token] = attempts + 1
            LINK_RECONNECT_ATTEMPTS_TOTAL.labels("pairing").inc()
            LOGGER.warning(
                "stage=pairing_retry temp=%s attempt=%s/%s delay=%s reason=%s",
                token,
                attempts + 1,
                settings.max_reconnect_attempts,
                settings.pairing_retry_delay,
                reason,
            )
            await asyncio.sleep(settings.pairing_retry_delay)

    async def _link(self, handle: ConnectionHandle) -> None:
        ctx = self._ctx
        temp = self.identity_token
        if temp not in ctx.pending:
            LOGGER.error("stage=pending_missing temp=%s", temp)
            await self._drop(handle)
            await self._abandon("pending_missing")
            return

        identity = handle.identity or LinkedIdentity(None, None)
        self.status.transition(MIGRATING)
        LOGGER.info("stage=migration_start temp=%s phone=%s", temp, identity.phone_id)

        # ephemeral connection fully closed with its last snapshot stored
        # before anything is copied
        await self.persist(handle, strict=True)
        await self._drop(handle)

        permanent = await ctx.accounts.promote_to_permanent(temp)
        self.status.identity_token = permanent
        await ctx.accounts.set_connection_metadata(
            permanent, identity.phone_id, identity.display_name
        )
        try:
            await ctx.sessions.copy(temp, permanent)
        except SessionStoreError as exc:
            raise MigrationError(f"copy_failed: {exc}") from exc
        try:
            await ctx.sessions.delete(temp)
        except SessionStoreError as exc:
            LOGGER.warning("stage=temp_session_delete_failed temp=%s error=%s", temp, exc)
        else:
            try:
                await ctx.accounts.retire_pending(temp)
            except AccountStoreError as exc:
                LOGGER.warning("stage=pending_retire_failed temp=%s error=%s", temp, exc)

        new_handle = await self._connect_permanent(permanent)

        self._forget_pending()
        self.status.transition(LINKED)
        LINK_PAIRING_TOTAL.labels("linked").inc()
        LOGGER.info("stage=migration_done temp=%s identity=%s", temp, permanent)

        task = asyncio.current_task()
        if task is not None:
            ctx.claim(permanent, task)
            ctx.release(temp, task)
        self._handle = None
        await ReconnectionSupervisor(ctx, permanent).run(handle=new_handle, opened=True)

    async def _connect_permanent(self, permanent: str) -> ConnectionHandle:
        ctx = self._ctx
        settings = ctx.settings
        pump = EventPump(ctx, permanent)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.migration_timeout
        attempts = 0
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise MigrationTimeoutError(permanent)
            credentials = await pump.load_credentials()
            if credentials is None:
                raise MigrationError("session_missing")
            try:
                self._handle = await asyncio.wait_for(pump.open(credentials), remaining)
                event = await pump.next_transition(self._handle, deadline=deadline)
            except asyncio.TimeoutError:
                raise MigrationTimeoutError(permanent) from None
            if event.connection == OPEN:
                handle, self._handle = self._handle, None
                return handle

            await self._drop(self._handle)
            cause = close_cause(event)
            if is_terminal(cause):
                with contextlib.suppress(SessionStoreError):
                    await ctx.sessions.delete(permanent)
                raise MigrationError("logged_out")
            attempts += 1
            if attempts > settings.max_reconnect_attempts:
                raise MigrationError("retries_exhausted")
            LINK_RECONNECT_ATTEMPTS_TOTAL.labels("migration").inc()
            LOGGER.warning(
                "stage=migration_retry identity=%s attempt=%s reason=%s",
                permanent,
                attempts,
                cause.reason,
            )
            delay = min(settings.pairing_retry_delay, max(deadline - loop.time(), 0.0))
            await asyncio.sleep(delay)

    async def _drop(self, handle: ConnectionHandle) -> None:
        if self._handle is handle:
            self._handle = None
        with contextlib.suppress(Exception):
            await handle.close()

    async def _abandon(self, reason: str) -> None:
        temp = self.identity_token
        self._forget_pending()
        try:
            await self._ctx.sessions.delete(temp)
        except SessionStoreError as exc:
            LOGGER.warning("stage=temp_session_delete_failed temp=%s error=%s", temp, exc)
        self.status.transition(ABANDONED, error=reason)
        LINK_PAIRING_TOTAL.labels("abandoned").inc()

    def _fail(self, reason: str) -> None:
        self._forget_pending()
        self.status.transition(FAILED, error=reason)
        LINK_PAIRING_TOTAL.labels("failed").inc()

    def _forget_pending(self) -> None:
        ctx = self._ctx
        ctx.pending.pop(self.identity_token, None)
        ctx.attempts.pop(self.identity_token, None)
        ctx.pairing_codes.pop(self.identity_token, None)


__all__ = [
    "MigrationError",
    "MigrationTimeoutError",
    "PairingError",
    "PairingSupervisor",
]
