"""JSON-safe encoding of protocol credentials.

Credentials produced by the protocol client are nested mappings and lists
that carry raw key material as ``bytes``.  Persisting them as JSON requires
every binary value to be replaced by a tagged object::

    {"kind": "bytes", "data": "<base64>"}

A plain mapping that happens to have exactly the keys ``kind`` and ``data``
is wrapped as ``{"kind": "object", "data": {...}}`` so that ``decode`` never
mistakes it for a tag.  Keys the codec does not know about are carried
through untouched.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any

_TAG_KEYS = frozenset({"kind", "data"})
_KIND_BYTES = "bytes"
_KIND_OBJECT = "object"


class CredentialCodecError(ValueError):
    """Raised when a value cannot be encoded or a stored blob is corrupt."""


def _looks_tagged(value: dict) -> bool:
    return len(value) == 2 and _TAG_KEYS.issuperset(value.keys())


def encode(value: Any) -> Any:
    """Return a JSON-safe copy of ``value`` with binary leaves tagged."""

    if isinstance(value, (bytes, bytearray, memoryview)):
        return {
            "kind": _KIND_BYTES,
            "data": base64.b64encode(bytes(value)).decode("ascii"),
        }
    if isinstance(value, dict):
        encoded: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise CredentialCodecError(f"non_string_key:{key!r}")
            encoded[key] = encode(item)
        if _looks_tagged(value):
            return {"kind": _KIND_OBJECT, "data": encoded}
        return encoded
    if isinstance(value, (list, tuple)):
        return [encode(item) for item in value]
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    raise CredentialCodecError(f"unsupported_type:{type(value).__name__}")


def decode(blob: Any) -> Any:
    """Reverse :func:`encode`; raises :class:`CredentialCodecError` on bad tags."""

    if isinstance(blob, dict):
        if _looks_tagged(blob):
            kind = blob.get("kind")
            data = blob.get("data")
            if kind == _KIND_BYTES:
                if not isinstance(data, str):
                    raise CredentialCodecError("bytes_tag_without_string")
                try:
                    return base64.b64decode(data.encode("ascii"), validate=True)
                except (binascii.Error, UnicodeEncodeError) as exc:
                    raise CredentialCodecError(f"invalid_base64:{exc}") from exc
            if kind == _KIND_OBJECT:
                if not isinstance(data, dict):
                    raise CredentialCodecError("object_tag_without_mapping")
                return {key: decode(item) for key, item in data.items()}
            raise CredentialCodecError(f"unknown_tag:{kind!r}")
        return {key: decode(item) for key, item in blob.items()}
    if isinstance(blob, list):
        return [decode(item) for item in blob]
    return blob


__all__ = ["CredentialCodecError", "decode", "encode"]
