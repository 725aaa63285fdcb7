from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

import prometheus_client
import pytest

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(ROOT_DIR))

prometheus_client.REGISTRY._names_to_collectors.clear()
prometheus_client.REGISTRY._collector_to_names.clear()

from linkworker.accounts import MemoryAccountRegistry  # noqa: E402
from linkworker.context import SupervisorSettings, WorkerContext  # noqa: E402
from linkworker.protocol import (  # noqa: E402
    CLOSE,
    OPEN,
    CloseCause,
    ConnectionEvent,
    LinkedIdentity,
)
from linkworker.store import MemorySessionStore  # noqa: E402


class FakeHandle:
    def __init__(self, identity_token: str, credentials: Optional[dict]) -> None:
        self.identity_token = identity_token
        self.events: "asyncio.Queue[ConnectionEvent]" = asyncio.Queue()
        self._credentials = dict(credentials) if credentials else {"noise_key": b"\x00" * 32}
        self.identity: Optional[LinkedIdentity] = None
        self.closed = False
        self.sent: List[Tuple[str, Any]] = []

    @property
    def credentials(self) -> dict:
        return self._credentials

    def emit(self, **fields: Any) -> None:
        self.events.put_nowait(ConnectionEvent(**fields))

    def open(self, phone: str = "15550001111", name: str = "Ada") -> None:
        self.identity = LinkedIdentity(phone_id=phone, display_name=name)
        self.emit(connection=OPEN, is_new_login=True)

    def drop(self, reason: str = "connection_lost", *, logged_out: bool = False) -> None:
        self.emit(connection=CLOSE, close_cause=CloseCause(reason, logged_out=logged_out))

    def rotate(self, **values: Any) -> None:
        self._credentials.update(values)
        self.emit(credentials_updated=True)

    async def send(self, recipient: str, payload: Any) -> Any:
        self.sent.append((recipient, payload))
        return {"ok": True}

    async def close(self) -> None:
        self.closed = True


class FakeProtocol:
    """Scripted protocol client.

    By default a connection opened without credentials emits a pairing code
    and one opened with credentials opens straight away.  Set ``on_open`` to
    script anything else.
    """

    def __init__(self) -> None:
        self.handles: List[FakeHandle] = []
        self.opened: List[Tuple[str, Optional[dict]]] = []
        self.on_open: Optional[Callable[[FakeHandle], None]] = None
        self.fail_opens = 0
        self.closed = False

    def default_open(self, handle: FakeHandle) -> None:
        if self.opened[-1][1] is None:
            handle.emit(pairing_code=f"code-{len(self.handles)}")
        else:
            handle.open()

    async def open(self, identity_token: str, credentials: Optional[dict]) -> FakeHandle:
        self.opened.append((identity_token, credentials))
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise ConnectionError("connection refused")
        handle = FakeHandle(identity_token, credentials)
        self.handles.append(handle)
        (self.on_open or self.default_open)(handle)
        return handle

    def last(self, identity_token: str) -> FakeHandle:
        return [h for h in self.handles if h.identity_token == identity_token][-1]

    def opens_for(self, identity_token: str) -> int:
        return sum(1 for token, _ in self.opened if token == identity_token)

    async def aclose(self) -> None:
        self.closed = True


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, Optional[str], Optional[str]]] = []

    async def notify_disconnected(
        self,
        owner_id: str,
        identity_token: str,
        phone_id: Optional[str],
        display_name: Optional[str],
    ) -> None:
        self.calls.append((owner_id, identity_token, phone_id, display_name))

    async def aclose(self) -> None:
        return None


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def protocol() -> FakeProtocol:
    return FakeProtocol()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def settings() -> SupervisorSettings:
    return SupervisorSettings(
        max_reconnect_attempts=5,
        reconnect_delay=0.0,
        pairing_retry_delay=0.0,
        migration_timeout=1.0,
    )


@pytest.fixture
def make_ctx(protocol: FakeProtocol, notifier: RecordingNotifier, settings: SupervisorSettings):
    def _factory(**overrides: Any) -> WorkerContext:
        return WorkerContext(
            protocol=overrides.pop("protocol", protocol),
            sessions=overrides.pop("sessions", MemorySessionStore()),
            accounts=overrides.pop("accounts", MemoryAccountRegistry()),
            notifier=overrides.pop("notifier", notifier),
            settings=overrides.pop("settings", settings),
        )

    return _factory


@pytest.fixture
def ctx(make_ctx) -> WorkerContext:
    return make_ctx()


@pytest.fixture
def wait_until():
    return eventually
