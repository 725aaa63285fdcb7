from telethon.crypto import AuthKey

from linkworker.codec import decode, encode
from linkworker.telegram import _CredentialSession


def test_restore_is_silent_and_snapshot_round_trips() -> None:
    changes: list[int] = []
    session = _CredentialSession(lambda: changes.append(1))
    stored = {
        "dc_id": 2,
        "server_address": "149.154.167.51",
        "port": 443,
        "auth_key": b"\x05" * 256,
        "takeout_id": None,
        "client_hint": {"first_seen": 1700000000},
    }

    session.restore(stored)

    assert changes == []
    assert session.snapshot() == stored
    assert decode(encode(session.snapshot())) == stored


def test_auth_key_and_dc_changes_are_reported() -> None:
    changes: list[int] = []
    session = _CredentialSession(lambda: changes.append(1))

    session.auth_key = AuthKey(data=b"\x01" * 256)
    session.set_dc(4, "149.154.167.91", 443)

    assert len(changes) == 2
    snapshot = session.snapshot()
    assert snapshot["auth_key"] == b"\x01" * 256
    assert snapshot["dc_id"] == 4
