import json

import pytest

from linkworker.codec import CredentialCodecError, decode, encode


def test_nested_binary_values_survive_json() -> None:
    credentials = {
        "noise_key": {"private": b"\x01\x02\xff", "public": bytearray(b"\x00" * 32)},
        "pre_keys": [{"id": 1, "key": b"\x10\x20"}, {"id": 2, "key": memoryview(b"\x30")}],
        "nested": [[b"a", [b"b", {"deep": b"\x00\x01"}]]],
        "registered": True,
        "counter": 7,
        "ratio": 0.5,
        "missing": None,
    }

    blob = json.loads(json.dumps(encode(credentials)))

    assert decode(blob) == {
        "noise_key": {"private": b"\x01\x02\xff", "public": b"\x00" * 32},
        "pre_keys": [{"id": 1, "key": b"\x10\x20"}, {"id": 2, "key": b"\x30"}],
        "nested": [[b"a", [b"b", {"deep": b"\x00\x01"}]]],
        "registered": True,
        "counter": 7,
        "ratio": 0.5,
        "missing": None,
    }


def test_binary_leaf_is_tagged() -> None:
    assert encode({"key": b"\x00\x01"}) == {"key": {"kind": "bytes", "data": "AAE="}}


def test_unknown_keys_are_preserved() -> None:
    credentials = {"future_field": {"anything": [1, "two", b"3"]}}
    assert decode(encode(credentials)) == credentials


def test_mapping_shaped_like_a_tag_is_not_misread() -> None:
    credentials = {"meta": {"kind": "bytes", "data": "not base64 at all"}}

    encoded = encode(credentials)

    assert encoded["meta"]["kind"] == "object"
    assert decode(json.loads(json.dumps(encoded))) == credentials


def test_tuples_become_lists() -> None:
    assert decode(encode({"pair": (b"a", 1)})) == {"pair": [b"a", 1]}


def test_empty_bytes_round_trip() -> None:
    assert decode(encode({"key": b""})) == {"key": b""}


@pytest.mark.parametrize("value", [{1: "int key"}, {"when": object()}, {"s": {1, 2}}])
def test_unsupported_values_raise(value) -> None:
    with pytest.raises(CredentialCodecError):
        encode(value)


def test_corrupt_base64_raises() -> None:
    with pytest.raises(CredentialCodecError):
        decode({"key": {"kind": "bytes", "data": "!!!not-base64"}})


def test_unknown_tag_raises() -> None:
    with pytest.raises(CredentialCodecError):
        decode({"key": {"kind": "bigint", "data": "12"}})
