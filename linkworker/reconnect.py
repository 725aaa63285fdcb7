from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Optional, Union

from .accounts import AccountNotFoundError, AccountStoreError
from .codec import CredentialCodecError
from .context import WorkerContext
from .metrics import (
    LINK_CREDENTIAL_SAVE_FAILURES_TOTAL,
    LINK_RECONNECT_ATTEMPTS_TOTAL,
    LINK_TERMINAL_DISCONNECTS_TOTAL,
)
from .protocol import (
    CLOSE,
    CONNECTING,
    OPEN,
    CloseCause,
    ConnectionEvent,
    ConnectionHandle,
    is_terminal,
)
from .store import SessionStoreError

LOGGER = logging.getLogger("linkworker.reconnect")

_UNSET: Any = object()


class EventPump:
    """Event handling for one identity, shared by both supervisors."""

    def __init__(self, ctx: WorkerContext, identity_token: str) -> None:
        self._ctx = ctx
        self.identity_token = identity_token

    async def load_credentials(self) -> Optional[Any]:
        """Stored credentials, ``None`` when absent or unreadable."""

        try:
            return await self._ctx.sessions.load(self.identity_token)
        except CredentialCodecError as exc:
            LOGGER.warning(
                "stage=session_corrupt identity=%s error=%s", self.identity_token, exc
            )
            return None

    async def persist(self, handle: ConnectionHandle, *, strict: bool = False) -> bool:
        try:
            await self._ctx.sessions.save(self.identity_token, handle.credentials)
        except (SessionStoreError, CredentialCodecError) as exc:
            LINK_CREDENTIAL_SAVE_FAILURES_TOTAL.inc()
            LOGGER.error(
                "stage=credentials_save_failed identity=%s error=%s",
                self.identity_token,
                exc,
            )
            if strict:
                raise
            return False
        return True

    async def apply(self, handle: ConnectionHandle, event: ConnectionEvent) -> None:
        if event.pairing_code:
            self._ctx.pairing_codes[self.identity_token] = event.pairing_code
            LOGGER.info("stage=pairing_code identity=%s", self.identity_token)
        if event.credentials_updated:
            await self.persist(handle)
        if event.connection == CONNECTING:
            LOGGER.info("stage=connecting identity=%s", self.identity_token)
        if event.is_new_login:
            LOGGER.info("stage=new_login identity=%s", self.identity_token)

    async def next_transition(
        self, handle: ConnectionHandle, *, deadline: float | None = None
    ) -> ConnectionEvent:
        """Consume events in order until the connection opens or closes."""

        loop = asyncio.get_running_loop()
        while True:
            timeout = None
            if deadline is not None:
                timeout = deadline - loop.time()
                if timeout <= 0:
                    raise asyncio.TimeoutError
            event = await asyncio.wait_for(handle.events.get(), timeout)
            await self.apply(handle, event)
            if event.connection in (OPEN, CLOSE):
                return event

    async def open(self, credentials: Optional[Any]) -> ConnectionHandle:
        return await self._ctx.protocol.open(self.identity_token, credentials)

    async def drop(self, handle: ConnectionHandle) -> None:
        self._ctx.registry.remove(self.identity_token, handle)
        with contextlib.suppress(Exception):
            await handle.close()


def close_cause(event: ConnectionEvent) -> CloseCause:
    return event.close_cause or CloseCause("connection_closed")


class ReconnectionSupervisor(EventPump):
    """Keeps an established identity connected.

    LINKED -> (close) -> RECONNECTING -> (open) -> LINKED, or to a terminal
    disconnect on logout or once ``max_reconnect_attempts`` consecutive
    reconnections have failed.  The persisted connected flag stays set while
    reconnecting so a restart restores the identity.
    """

    def __init__(self, ctx: WorkerContext, identity_token: str) -> None:
        super().__init__(ctx, identity_token)
        self._handle: Optional[ConnectionHandle] = None

    async def run(
        self,
        *,
        handle: Optional[ConnectionHandle] = None,
        opened: bool = False,
        credentials: Any = _UNSET,
        gate: Optional[asyncio.Semaphore] = None,
    ) -> None:
        try:
            await self._loop(handle, opened, credentials, gate)
        except asyncio.CancelledError:
            LOGGER.info("stage=supervisor_cancelled identity=%s", self.identity_token)
            raise
        except Exception as exc:
            LOGGER.exception("stage=supervisor_failed identity=%s", self.identity_token)
            await self._terminate(CloseCause("supervisor_error", error=str(exc)))
        finally:
            if self._handle is not None:
                await self.drop(self._handle)
                self._handle = None
            self._ctx.update_metrics()

    async def _loop(
        self,
        handle: Optional[ConnectionHandle],
        opened: bool,
        credentials: Any,
        gate: Optional[asyncio.Semaphore],
    ) -> None:
        ctx = self._ctx
        settings = ctx.settings
        self._handle = handle
        while True:
            outcome: Union[ConnectionHandle, CloseCause]
            if self._handle is None:
                outcome = await self._connect(credentials, gate)
                credentials, gate = _UNSET, None
            else:
                outcome = self._handle
            if isinstance(outcome, CloseCause):
                cause = outcome
            else:
                self._handle = outcome
                cause = await self._drive(outcome, opened)
                await self.drop(outcome)
                self._handle = None
            opened = False

            if is_terminal(cause):
                await self._terminate(cause)
                return
            attempts = ctx.attempts.get(self.identity_token, 0)
            if attempts >= settings.max_reconnect_attempts:
                await self._terminate(
                    CloseCause("retries_exhausted", error=cause.error or cause.reason)
                )
                return
            ctx.attempts[self.identity_token] = attempts + 1
            LINK_RECONNECT_ATTEMPTS_TOTAL.labels("linked").inc()
            LOGGER.warning(
                "stage=reconnect_scheduled identity=%s attempt=%s/%s delay=%s reason=%s",
                self.identity_token,
                attempts + 1,
                settings.max_reconnect_attempts,
                settings.reconnect_delay,
                cause.reason,
            )
            await asyncio.sleep(settings.reconnect_delay)

    async def _connect(
        self, credentials: Any, gate: Optional[asyncio.Semaphore]
    ) -> Union[ConnectionHandle, CloseCause]:
        """Open a connection, or describe why opening failed."""

        try:
            async with gate if gate is not None else contextlib.nullcontext():
                if credentials is _UNSET:
                    credentials = await self.load_credentials()
                return await self.open(credentials)
        except Exception as exc:
            LOGGER.error(
                "stage=open_failed identity=%s error=%s", self.identity_token, exc
            )
            return CloseCause("open_failed", error=str(exc))

    async def _drive(self, handle: ConnectionHandle, opened: bool) -> CloseCause:
        if opened:
            await self._mark_linked(handle)
        while True:
            event = await self.next_transition(handle)
            if event.connection == OPEN:
                await self._mark_linked(handle)
                continue
            cause = close_cause(event)
            LOGGER.warning(
                "stage=connection_closed identity=%s reason=%s logged_out=%s error=%s",
                self.identity_token,
                cause.reason,
                cause.logged_out,
                cause.error,
            )
            return cause

    async def _mark_linked(self, handle: ConnectionHandle) -> None:
        ctx = self._ctx
        ctx.registry.set(self.identity_token, handle)
        ctx.attempts[self.identity_token] = 0
        ctx.pairing_codes.pop(self.identity_token, None)
        try:
            await ctx.accounts.set_connected_flag(self.identity_token, True)
        except (AccountNotFoundError, AccountStoreError) as exc:
            LOGGER.error(
                "stage=connected_flag_failed identity=%s error=%s",
                self.identity_token,
                exc,
            )
        identity = handle.identity
        LOGGER.info(
            "stage=linked identity=%s phone=%s",
            self.identity_token,
            identity.phone_id if identity else None,
        )
        ctx.update_metrics()

    async def _terminate(self, cause: CloseCause) -> None:
        ctx = self._ctx
        token = self.identity_token
        ctx.registry.remove(token)
        ctx.attempts.pop(token, None)
        ctx.pairing_codes.pop(token, None)
        LINK_TERMINAL_DISCONNECTS_TOTAL.labels(cause.reason).inc()
        LOGGER.warning(
            "stage=terminal_disconnect identity=%s reason=%s logged_out=%s error=%s",
            token,
            cause.reason,
            cause.logged_out,
            cause.error,
        )
        if cause.logged_out:
            try:
                await ctx.sessions.delete(token)
            except SessionStoreError as exc:
                LOGGER.error("stage=session_delete_failed identity=%s error=%s", token, exc)

        try:
            was_connected = await ctx.accounts.set_connected_flag(token, False)
        except (AccountNotFoundError, AccountStoreError) as exc:
            LOGGER.error("stage=connected_flag_failed identity=%s error=%s", token, exc)
            return
        if not was_connected:
            LOGGER.info(
                "stage=notify_skipped identity=%s reason=already_disconnected", token
            )
            return

        try:
            account = await ctx.accounts.get_account(token)
        except AccountStoreError as exc:
            LOGGER.error("stage=account_lookup_failed identity=%s error=%s", token, exc)
            return
        if account is None:
            return
        try:
            await ctx.notifier.notify_disconnected(
                account.owner_id, token, account.phone_id, account.display_name
            )
        except Exception:
            LOGGER.exception("stage=notify_failed identity=%s", token)


__all__ = ["EventPump", "ReconnectionSupervisor", "close_cause"]
