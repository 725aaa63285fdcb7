from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, Optional

LOGGER = logging.getLogger("linkworker.registry")


class RegistryConflictError(RuntimeError):
    """Raised when a second live handle is registered for one identity."""


class ConnectionRegistry:
    """Live connection handles keyed by identity token.

    At most one handle per identity.  ``remove`` only drops the entry when it
    still points at the handle the caller owns, so a late cleanup from a dead
    connection cannot unregister its replacement.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, Any] = {}

    def set(self, identity_token: str, handle: Any) -> None:
        current = self._handles.get(identity_token)
        if current is not None and current is not handle:
            raise RegistryConflictError(identity_token)
        self._handles[identity_token] = handle
        LOGGER.info(
            "stage=registry_set identity=%s total=%s", identity_token, len(self._handles)
        )

    def get(self, identity_token: str) -> Optional[Any]:
        return self._handles.get(identity_token)

    def remove(self, identity_token: str, handle: Any = None) -> Optional[Any]:
        current = self._handles.get(identity_token)
        if current is None:
            return None
        if handle is not None and current is not handle:
            return None
        del self._handles[identity_token]
        LOGGER.info(
            "stage=registry_remove identity=%s total=%s",
            identity_token,
            len(self._handles),
        )
        return current

    def __contains__(self, identity_token: object) -> bool:
        return identity_token in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._handles))


__all__ = ["ConnectionRegistry", "RegistryConflictError"]
