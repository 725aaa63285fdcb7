from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, Optional, Set

from telethon import TelegramClient
from telethon.crypto import AuthKey
from telethon.errors import SessionPasswordNeededError
from telethon.errors.rpcerrorlist import AuthKeyUnregisteredError
from telethon.sessions import MemorySession

from .protocol import (
    CLOSE,
    CONNECTING,
    OPEN,
    CloseCause,
    ConnectionEvent,
    LinkedIdentity,
)

LOGGER = logging.getLogger("linkworker.telegram")

QR_LOGIN_TIMEOUT = 120.0
QR_ROTATIONS = 3
# set in the stored credentials once the account has logged in
AUTHORIZED_MARK = "authorized"

_SESSION_FIELDS = ("dc_id", "server_address", "port", "auth_key", "takeout_id")


class _CredentialSession(MemorySession):
    """In-memory telethon session that reports auth key and DC changes.

    Only the connection-level fields are exported; entity and update caches
    are rebuilt by telethon after each connect.
    """

    def __init__(self, on_change: Callable[[], None]) -> None:
        self._on_change = on_change
        self._extra: Dict[str, Any] = {}
        super().__init__()

    @property
    def auth_key(self) -> Optional[AuthKey]:
        return self._auth_key

    @auth_key.setter
    def auth_key(self, value: Optional[AuthKey]) -> None:
        self._auth_key = value
        self._on_change()

    def set_dc(self, dc_id: int, server_address: str, port: int) -> None:
        super().set_dc(dc_id, server_address, port)
        self._on_change()

    @property
    def authorized(self) -> bool:
        return bool(self._extra.get(AUTHORIZED_MARK))

    def mark_authorized(self) -> None:
        if not self.authorized:
            self._extra[AUTHORIZED_MARK] = True
            self._on_change()

    def restore(self, credentials: Dict[str, Any]) -> None:
        # private fields so that loading does not look like a rotation
        self._extra = {k: v for k, v in credentials.items() if k not in _SESSION_FIELDS}
        if credentials.get("dc_id") is not None:
            self._dc_id = int(credentials["dc_id"])
            self._server_address = credentials.get("server_address")
            self._port = credentials.get("port")
        key = credentials.get("auth_key")
        self._auth_key = AuthKey(data=bytes(key)) if key else None
        self._takeout_id = credentials.get("takeout_id")

    def snapshot(self) -> Dict[str, Any]:
        key = self._auth_key
        return {
            **self._extra,
            "dc_id": self._dc_id,
            "server_address": self._server_address,
            "port": self._port,
            "auth_key": key.key if key is not None else None,
            "takeout_id": self._takeout_id,
        }


def _display_name(user: Any) -> Optional[str]:
    parts = [getattr(user, "first_name", None), getattr(user, "last_name", None)]
    name = " ".join(part for part in parts if part)
    return name or getattr(user, "username", None)


class TelegramConnection:
    """One ``TelegramClient`` exposed as a connection handle."""

    def __init__(
        self,
        identity_token: str,
        credentials: Optional[Dict[str, Any]],
        factory: Callable[[MemorySession], TelegramClient],
        *,
        qr_timeout: float = QR_LOGIN_TIMEOUT,
        qr_rotations: int = QR_ROTATIONS,
    ) -> None:
        self.identity_token = identity_token
        self.events: "asyncio.Queue[ConnectionEvent]" = asyncio.Queue()
        self._session = _CredentialSession(self._credentials_changed)
        if credentials:
            self._session.restore(credentials)
        self._client = factory(self._session)
        self._qr_timeout = qr_timeout
        self._qr_rotations = max(1, qr_rotations)
        self._identity: Optional[LinkedIdentity] = None
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._closing = False
        self._closed_emitted = False

    @property
    def credentials(self) -> Dict[str, Any]:
        return self._session.snapshot()

    @property
    def identity(self) -> Optional[LinkedIdentity]:
        return self._identity

    @property
    def closed(self) -> bool:
        return self._closing

    def _emit(self, **fields: Any) -> None:
        self.events.put_nowait(ConnectionEvent(**fields))

    def _emit_close(self, cause: CloseCause) -> None:
        if self._closing or self._closed_emitted:
            return
        self._closed_emitted = True
        self._emit(connection=CLOSE, close_cause=cause)

    def _credentials_changed(self) -> None:
        if not self._closing:
            self._emit(credentials_updated=True)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def start(self) -> None:
        self._emit(connection=CONNECTING)
        await self._client.connect()
        # telethon reports a revoked auth key as "not authorized"
        authorized = await self._client.is_user_authorized()
        if not authorized and self._session.authorized:
            LOGGER.warning("stage=authorization_revoked identity=%s", self.identity_token)
            self._emit_close(
                CloseCause("logged_out", logged_out=True, error="authorization_revoked")
            )
            return
        self._spawn(self._watch_disconnect())
        if authorized:
            await self._opened(new_login=False)
        else:
            self._spawn(self._qr_flow())

    async def _opened(self, *, new_login: bool) -> None:
        me = await self._client.get_me()
        self._identity = LinkedIdentity(
            phone_id=getattr(me, "phone", None), display_name=_display_name(me)
        )
        self._session.mark_authorized()
        LOGGER.info(
            "stage=authorized identity=%s new_login=%s", self.identity_token, new_login
        )
        self._emit(connection=OPEN, is_new_login=new_login)

    async def _qr_flow(self) -> None:
        try:
            qr_login = await self._client.qr_login()
            for rotation in range(self._qr_rotations):
                if rotation:
                    await qr_login.recreate()
                self._emit(pairing_code=qr_login.url)
                try:
                    await qr_login.wait(timeout=self._qr_timeout)
                except asyncio.TimeoutError:
                    LOGGER.info(
                        "stage=qr_timeout identity=%s rotation=%s",
                        self.identity_token,
                        rotation + 1,
                    )
                    continue
                await self._opened(new_login=True)
                return
            self._emit_close(CloseCause("pairing_code_expired"))
        except SessionPasswordNeededError:
            LOGGER.warning("stage=needs_2fa identity=%s", self.identity_token)
            self._emit_close(CloseCause("password_required", logged_out=True))
        except AuthKeyUnregisteredError as exc:
            self._emit_close(CloseCause("logged_out", logged_out=True, error=str(exc)))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("stage=qr_fail identity=%s", self.identity_token)
            self._emit_close(CloseCause("qr_login_failed", error=str(exc)))

    async def _watch_disconnect(self) -> None:
        try:
            await self._client.disconnected
        except asyncio.CancelledError:
            raise
        except AuthKeyUnregisteredError as exc:
            self._emit_close(CloseCause("logged_out", logged_out=True, error=str(exc)))
            return
        except Exception as exc:
            self._emit_close(CloseCause("connection_lost", error=str(exc)))
            return
        self._emit_close(CloseCause("connection_lost"))

    async def send(self, recipient: str, payload: Any) -> Any:
        if isinstance(payload, dict):
            text = payload.get("text") or ""
        else:
            text = str(payload)
        return await self._client.send_message(recipient, text)

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        with contextlib.suppress(Exception):
            await self._client.disconnect()


class TelegramProtocol:
    """Protocol client opening one telethon connection per identity."""

    def __init__(
        self,
        api_id: int,
        api_hash: str,
        *,
        device_model: str,
        system_version: str,
        app_version: str,
        lang_code: str,
        system_lang_code: str,
        qr_timeout: float = QR_LOGIN_TIMEOUT,
    ) -> None:
        self._api_id = api_id
        self._api_hash = api_hash
        self._device_model = device_model
        self._system_version = system_version
        self._app_version = app_version
        self._lang_code = lang_code
        self._system_lang_code = system_lang_code
        self._qr_timeout = qr_timeout
        self._connections: Set[TelegramConnection] = set()

    def _build_client(self, session: MemorySession) -> TelegramClient:
        return TelegramClient(
            session,
            self._api_id,
            self._api_hash,
            device_model=self._device_model,
            system_version=self._system_version,
            app_version=self._app_version,
            lang_code=self._lang_code,
            system_lang_code=self._system_lang_code,
        )

    async def open(
        self, identity_token: str, credentials: Optional[Dict[str, Any]]
    ) -> TelegramConnection:
        connection = TelegramConnection(
            identity_token,
            credentials,
            self._build_client,
            qr_timeout=self._qr_timeout,
        )
        try:
            await connection.start()
        except BaseException:
            await connection.close()
            raise
        self._connections = {c for c in self._connections if not c.closed}
        self._connections.add(connection)
        return connection

    async def aclose(self) -> None:
        connections = list(self._connections)
        self._connections.clear()
        for connection in connections:
            await connection.close()


__all__ = ["TelegramConnection", "TelegramProtocol"]
