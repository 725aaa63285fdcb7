from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .accounts import AccountNotFoundError, AccountStoreError
from .codec import CredentialCodecError
from .context import SupervisorConflictError, WorkerContext
from .metrics import LINK_RESTORE_TOTAL
from .reconnect import ReconnectionSupervisor
from .store import SessionStoreError

LOGGER = logging.getLogger("linkworker.restore")


@dataclass(frozen=True, slots=True)
class RestoreSummary:
    restored: int
    failed: int


async def _mark_unrecoverable(ctx: WorkerContext, token: str, reason: str) -> None:
    # consistency repair, not a live disconnect: nobody is notified
    try:
        await ctx.accounts.set_connected_flag(token, False)
    except (AccountNotFoundError, AccountStoreError) as exc:
        LOGGER.error("stage=restore_flag_failed identity=%s error=%s", token, exc)
    LOGGER.warning("stage=restore_skipped identity=%s reason=%s", token, reason)


async def _restore_one(
    ctx: WorkerContext, token: str, gate: Optional[asyncio.Semaphore]
) -> bool:
    if ctx.supervisor(token) is not None:
        LOGGER.info("stage=restore_skipped identity=%s reason=already_running", token)
        return False
    try:
        if not await ctx.sessions.exists(token):
            await _mark_unrecoverable(ctx, token, "session_missing")
            return False
        credentials = await ctx.sessions.load(token)
    except CredentialCodecError as exc:
        await _mark_unrecoverable(ctx, token, f"session_corrupt: {exc}")
        return False
    except SessionStoreError as exc:
        LOGGER.error("stage=restore_load_failed identity=%s error=%s", token, exc)
        return False
    if credentials is None:
        await _mark_unrecoverable(ctx, token, "session_missing")
        return False

    supervisor = ReconnectionSupervisor(ctx, token)
    try:
        ctx.spawn(token, supervisor.run(credentials=credentials, gate=gate))
    except SupervisorConflictError:
        LOGGER.info("stage=restore_skipped identity=%s reason=already_running", token)
        return False
    LOGGER.info("stage=restore_started identity=%s", token)
    return True


async def restore_all_on_boot(ctx: WorkerContext) -> RestoreSummary:
    """Relaunch a supervisor for every identity persisted as connected.

    ``restored`` counts supervisors started; whether each one then reaches
    a live connection is up to the normal retry policy.  One tenant failing
    never stops the others.
    """

    try:
        tokens = await ctx.accounts.get_connected_identities()
    except AccountStoreError as exc:
        LOGGER.error("stage=restore_list_failed error=%s", exc)
        return RestoreSummary(restored=0, failed=0)

    limit = ctx.settings.restore_concurrency
    gate = asyncio.Semaphore(limit) if limit > 0 else None
    LOGGER.info("stage=restore_begin candidates=%s concurrency=%s", len(tokens), limit or "unbounded")

    results = await asyncio.gather(
        *(_restore_one(ctx, token, gate) for token in tokens), return_exceptions=True
    )
    restored = failed = 0
    for token, result in zip(tokens, results):
        if result is True:
            restored += 1
            LINK_RESTORE_TOTAL.labels("restored").inc()
            continue
        failed += 1
        LINK_RESTORE_TOTAL.labels("failed").inc()
        if isinstance(result, BaseException):
            LOGGER.error("stage=restore_error identity=%s error=%r", token, result)

    ctx.update_metrics()
    LOGGER.info("stage=restore_done restored=%s failed=%s", restored, failed)
    return RestoreSummary(restored=restored, failed=failed)


__all__ = ["RestoreSummary", "restore_all_on_boot"]
