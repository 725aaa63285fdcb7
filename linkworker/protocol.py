"""Boundary between the connection core and a messaging protocol client."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Protocol

CONNECTING = "connecting"
OPEN = "open"
CLOSE = "close"


@dataclass(frozen=True, slots=True)
class CloseCause:
    reason: str
    logged_out: bool = False
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    connection: Optional[str] = None
    pairing_code: Optional[str] = None
    close_cause: Optional[CloseCause] = None
    is_new_login: bool = False
    credentials_updated: bool = False


@dataclass(frozen=True, slots=True)
class LinkedIdentity:
    phone_id: Optional[str]
    display_name: Optional[str]


class ConnectionHandle(Protocol):
    identity_token: str
    events: "asyncio.Queue[ConnectionEvent]"

    @property
    def credentials(self) -> Any:
        """Full current credential snapshot."""

    @property
    def identity(self) -> Optional[LinkedIdentity]:
        """Linked account details, known once the connection is open."""

    async def send(self, recipient: str, payload: Any) -> Any:
        ...

    async def close(self) -> None:
        ...


class ProtocolClient(Protocol):
    async def open(
        self, identity_token: str, credentials: Optional[Any]
    ) -> ConnectionHandle:
        """Start a connection; ``None`` credentials begin a fresh pairing."""

    async def aclose(self) -> None:
        ...


def is_terminal(cause: Optional[CloseCause]) -> bool:
    """Explicit logout ends a session; every other cause is transient."""

    return bool(cause and cause.logged_out)


__all__ = [
    "CLOSE",
    "CONNECTING",
    "OPEN",
    "CloseCause",
    "ConnectionEvent",
    "ConnectionHandle",
    "LinkedIdentity",
    "ProtocolClient",
    "is_terminal",
]
