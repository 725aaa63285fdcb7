from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Coroutine, Dict, Optional

from .accounts import AccountRegistry
from .metrics import LINK_SESSIONS_LINKED, LINK_SESSIONS_PAIRING
from .notify import Notifier
from .protocol import ProtocolClient
from .registry import ConnectionRegistry
from .store import SessionStore

LOGGER = logging.getLogger("linkworker")

FINISHED_STATUS_TTL = 900.0

PAIRING = "pairing"
MIGRATING = "migrating"
LINKED = "linked"
FAILED = "failed"
ABANDONED = "abandoned"


class SupervisorConflictError(RuntimeError):
    """Raised when a second supervisor would drive the same identity."""


@dataclass(frozen=True, slots=True)
class SupervisorSettings:
    max_reconnect_attempts: int = 5
    reconnect_delay: float = 5.0
    pairing_retry_delay: float = 3.0
    migration_timeout: float = 30.0
    restore_concurrency: int = 0


@dataclass(slots=True)
class PendingPairing:
    temp_token: str
    api_credential: str
    created_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class PairingStatus:
    temp_token: str
    state: str = PAIRING
    identity_token: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    def transition(self, state: str, *, error: Optional[str] = None) -> None:
        if state != self.state:
            LOGGER.info(
                "stage=pairing_transition temp=%s from=%s to=%s reason=%s",
                self.temp_token,
                self.state,
                state,
                error or "-",
            )
        self.state = state
        self.last_error = error
        self.updated_at = time.time()

    @property
    def finished(self) -> bool:
        return self.state in {LINKED, FAILED, ABANDONED}


class WorkerContext:
    """State shared by every supervisor, passed in rather than held globally.

    Each identity is driven by at most one supervisor task; ``spawn`` and
    ``claim`` enforce that.  The pending-pairing records, pairing codes and
    reconnect counters are only mutated by the task that owns the key.
    """

    def __init__(
        self,
        *,
        protocol: ProtocolClient,
        sessions: SessionStore,
        accounts: AccountRegistry,
        notifier: Notifier,
        settings: SupervisorSettings | None = None,
        registry: ConnectionRegistry | None = None,
    ) -> None:
        self.protocol = protocol
        self.sessions = sessions
        self.accounts = accounts
        self.notifier = notifier
        self.settings = settings or SupervisorSettings()
        self.registry = registry or ConnectionRegistry()
        self.pending: Dict[str, PendingPairing] = {}
        self.pairing_codes: Dict[str, str] = {}
        self.pairing_status: Dict[str, PairingStatus] = {}
        self.attempts: Dict[str, int] = {}
        self._tasks: Dict[str, asyncio.Task[Any]] = {}

    def supervisor(self, key: str) -> Optional[asyncio.Task[Any]]:
        task = self._tasks.get(key)
        if task is None or task.done():
            return None
        return task

    def spawn(self, key: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        if self.supervisor(key) is not None:
            coro.close()
            raise SupervisorConflictError(key)
        task = asyncio.get_running_loop().create_task(coro, name=f"link:{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return task

    def claim(self, key: str, task: asyncio.Task[Any]) -> None:
        """Bind an already running task to another identity (pairing handoff)."""

        current = self.supervisor(key)
        if current is not None and current is not task:
            raise SupervisorConflictError(key)
        self._tasks[key] = task
        task.add_done_callback(lambda done, key=key: self._forget(key, done))

    def release(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def _forget(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        self.update_metrics()

    async def cancel(self, key: str) -> bool:
        task = self.supervisor(key)
        if task is None:
            return False
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        return True

    async def cancel_all(self) -> None:
        tasks = {task for task in self._tasks.values() if not task.done()}
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks.clear()

    def cleanup_finished_status(self) -> None:
        cutoff = time.time() - FINISHED_STATUS_TTL
        stale = [
            token
            for token, status in self.pairing_status.items()
            if status.finished and status.updated_at < cutoff
        ]
        for token in stale:
            self.pairing_status.pop(token, None)

    def stats_snapshot(self) -> Dict[str, int]:
        pairing = sum(
            1 for status in self.pairing_status.values() if not status.finished
        )
        return {
            "linked": len(self.registry),
            "pairing": pairing,
            "supervisors": sum(1 for task in self._tasks.values() if not task.done()),
        }

    def update_metrics(self) -> None:
        snapshot = self.stats_snapshot()
        LINK_SESSIONS_LINKED.set(snapshot["linked"])
        LINK_SESSIONS_PAIRING.set(snapshot["pairing"])


__all__ = [
    "ABANDONED",
    "FAILED",
    "LINKED",
    "MIGRATING",
    "PAIRING",
    "PairingStatus",
    "PendingPairing",
    "SupervisorConflictError",
    "SupervisorSettings",
    "WorkerContext",
]
