import re

import pytest

from linkworker.accounts import (
    AccountNotFoundError,
    MemoryAccountRegistry,
    PgAccountRegistry,
    TenantAccount,
    generate_token,
)


def test_generated_tokens_follow_prefix_format() -> None:
    token = generate_token("acc")
    assert re.fullmatch(r"acc_[0-9a-z]+_[0-9a-z]{16}", token)
    assert generate_token("tmp").startswith("tmp_")
    assert token != generate_token("acc")


@pytest.mark.anyio
async def test_promote_issues_permanent_record_and_keeps_pending_until_retired() -> None:
    accounts = MemoryAccountRegistry()
    temp = await accounts.create_pending_identity("owner-1")

    permanent = await accounts.promote_to_permanent(temp)

    assert permanent.startswith("acc_")
    account = await accounts.get_account(permanent)
    assert account is not None
    assert account.owner_id == "owner-1"
    assert not account.is_pending
    assert not account.is_connected
    assert (await accounts.get_account(temp)).promoted_to == permanent

    assert await accounts.promote_to_permanent(temp) == permanent
    assert await accounts.retire_pending(temp) is True
    assert await accounts.get_account(temp) is None
    assert await accounts.retire_pending(temp) is False


@pytest.mark.anyio
async def test_retire_pending_leaves_permanent_records_alone() -> None:
    accounts = MemoryAccountRegistry()
    accounts.add(TenantAccount(identity_token="acc_1", owner_id="o"))

    assert await accounts.retire_pending("acc_1") is False
    assert await accounts.get_account("acc_1") is not None


@pytest.mark.anyio
async def test_promote_unknown_temp_token_raises() -> None:
    accounts = MemoryAccountRegistry()
    with pytest.raises(AccountNotFoundError):
        await accounts.promote_to_permanent("tmp_missing")


@pytest.mark.anyio
async def test_connected_flag_returns_previous_value() -> None:
    accounts = MemoryAccountRegistry()
    accounts.add(TenantAccount(identity_token="acc_1", owner_id="o"))

    assert await accounts.set_connected_flag("acc_1", True) is False
    assert await accounts.set_connected_flag("acc_1", False) is True
    assert await accounts.set_connected_flag("acc_1", False) is False


@pytest.mark.anyio
async def test_connected_identities_skip_pending_records() -> None:
    accounts = MemoryAccountRegistry()
    accounts.add(TenantAccount(identity_token="acc_1", owner_id="o", is_connected=True))
    accounts.add(TenantAccount(identity_token="acc_2", owner_id="o"))
    accounts.add(
        TenantAccount(identity_token="tmp_1", owner_id="o", is_connected=True, is_pending=True)
    )

    assert await accounts.get_connected_identities() == ["acc_1"]


@pytest.mark.anyio
async def test_metadata_for_unknown_identity_raises() -> None:
    accounts = MemoryAccountRegistry()
    with pytest.raises(AccountNotFoundError):
        await accounts.set_connection_metadata("acc_x", "1555", "Ada")


class _RecordingDatabase:
    def __init__(self, row=None) -> None:
        self.row = row
        self.calls: list[tuple[str, tuple]] = []

    async def fetchrow(self, sql, *args):
        self.calls.append((" ".join(sql.split()), args))
        return self.row


@pytest.mark.anyio
async def test_pg_connected_flag_reads_previous_value_in_one_statement() -> None:
    db = _RecordingDatabase(row={"previous": True})
    accounts = PgAccountRegistry(db)

    assert await accounts.set_connected_flag("acc_1", False) is True
    sql, args = db.calls[0]
    assert sql.startswith("UPDATE link_accounts")
    assert "RETURNING prev.is_connected" in sql
    assert args == ("acc_1", False)


@pytest.mark.anyio
async def test_pg_promote_without_pending_row_raises() -> None:
    accounts = PgAccountRegistry(_RecordingDatabase(row=None))
    with pytest.raises(AccountNotFoundError):
        await accounts.promote_to_permanent("tmp_missing")


@pytest.mark.anyio
async def test_pg_promote_returns_identity_issued_earlier() -> None:
    db = _RecordingDatabase(row={"identity_token": "acc_first"})
    accounts = PgAccountRegistry(db)

    assert await accounts.promote_to_permanent("tmp_1") == "acc_first"
    sql, args = db.calls[0]
    assert "FOR UPDATE" in sql
    assert "SET promoted_to" in sql
    assert args[0] == "tmp_1"
