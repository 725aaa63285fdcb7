import pytest

from linkworker.accounts import TenantAccount
from linkworker.context import SupervisorSettings
from linkworker.restore import restore_all_on_boot
from linkworker.store import SessionStoreError


def _account(token: str, *, connected: bool = True) -> TenantAccount:
    return TenantAccount(identity_token=token, owner_id=f"owner-{token}", is_connected=connected)


@pytest.mark.anyio
async def test_connected_record_without_session_is_repaired_silently(
    ctx, protocol, notifier
) -> None:
    ctx.accounts.add(_account("acc_1"))

    summary = await restore_all_on_boot(ctx)

    assert summary.restored == 0
    assert summary.failed == 1
    assert (await ctx.accounts.get_account("acc_1")).is_connected is False
    assert protocol.opened == []
    assert notifier.calls == []


@pytest.mark.anyio
async def test_restores_every_connected_identity(ctx, protocol, wait_until) -> None:
    for token in ("acc_1", "acc_2"):
        ctx.accounts.add(_account(token))
        await ctx.sessions.save(token, {"identity": token.encode()})
    ctx.accounts.add(_account("acc_3"))
    ctx.accounts.add(_account("acc_4", connected=False))
    await ctx.sessions.save("acc_4", {"identity": b"idle"})

    summary = await restore_all_on_boot(ctx)

    assert (summary.restored, summary.failed) == (2, 1)
    await wait_until(lambda: "acc_1" in ctx.registry and "acc_2" in ctx.registry)
    assert sorted(protocol.opened) == [
        ("acc_1", {"identity": b"acc_1"}),
        ("acc_2", {"identity": b"acc_2"}),
    ]
    assert "acc_4" not in ctx.registry
    await ctx.cancel_all()


@pytest.mark.anyio
async def test_corrupt_session_is_counted_as_failed(ctx, protocol) -> None:
    ctx.accounts.add(_account("acc_1"))
    ctx.sessions._records["acc_1"] = ("{broken", 0.0)

    summary = await restore_all_on_boot(ctx)

    assert summary.failed == 1
    assert (await ctx.accounts.get_account("acc_1")).is_connected is False
    assert protocol.opened == []


@pytest.mark.anyio
async def test_one_failing_tenant_does_not_block_others(ctx, monkeypatch, wait_until) -> None:
    for token in ("acc_1", "acc_2"):
        ctx.accounts.add(_account(token))
        await ctx.sessions.save(token, {"identity": b"x"})

    real_exists = ctx.sessions.exists

    async def _flaky_exists(identity_token):
        if identity_token == "acc_1":
            raise SessionStoreError("exists_failed")
        return await real_exists(identity_token)

    monkeypatch.setattr(ctx.sessions, "exists", _flaky_exists)

    summary = await restore_all_on_boot(ctx)

    assert (summary.restored, summary.failed) == (1, 1)
    await wait_until(lambda: "acc_2" in ctx.registry)
    # a storage error is not proof the session is gone
    assert (await ctx.accounts.get_account("acc_1")).is_connected is True
    await ctx.cancel_all()


@pytest.mark.anyio
async def test_initial_open_failure_falls_into_retry_policy(ctx, protocol, wait_until) -> None:
    ctx.accounts.add(_account("acc_1"))
    await ctx.sessions.save("acc_1", {"identity": b"x"})
    protocol.fail_opens = 1

    summary = await restore_all_on_boot(ctx)

    assert summary.restored == 1
    await wait_until(lambda: "acc_1" in ctx.registry)
    assert protocol.opens_for("acc_1") == 2
    await ctx.cancel_all()


@pytest.mark.anyio
async def test_concurrency_cap_still_restores_all(make_ctx, protocol, wait_until) -> None:
    ctx = make_ctx(settings=SupervisorSettings(reconnect_delay=0.0, restore_concurrency=1))
    tokens = [f"acc_{i}" for i in range(4)]
    for token in tokens:
        ctx.accounts.add(_account(token))
        await ctx.sessions.save(token, {"identity": token.encode()})

    summary = await restore_all_on_boot(ctx)

    assert summary.restored == 4
    await wait_until(lambda: all(token in ctx.registry for token in tokens))
    await ctx.cancel_all()
