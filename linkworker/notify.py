from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import httpx

from .metrics import LINK_NOTIFY_ERRORS_TOTAL

LOGGER = logging.getLogger("linkworker.notify")


class Notifier(Protocol):
    async def notify_disconnected(
        self,
        owner_id: str,
        identity_token: str,
        phone_id: Optional[str],
        display_name: Optional[str],
    ) -> None:
        ...

    async def aclose(self) -> None:
        ...


class LogNotifier:
    """Fallback used when no notification endpoint is configured."""

    async def notify_disconnected(
        self,
        owner_id: str,
        identity_token: str,
        phone_id: Optional[str],
        display_name: Optional[str],
    ) -> None:
        LOGGER.warning(
            "stage=notify_skipped event=account.disconnected owner_id=%s identity=%s phone=%s",
            owner_id,
            identity_token,
            phone_id,
        )

    async def aclose(self) -> None:
        return None


class WebhookNotifier:
    """Posts ``account.disconnected`` events to an HTTP endpoint."""

    def __init__(
        self, url: str, *, token: str | None = None, http_timeout: float = 10.0
    ) -> None:
        self._url = url.rstrip("/")
        self._token = (token or "").strip() or None
        self._http = httpx.AsyncClient(timeout=http_timeout)

    async def notify_disconnected(
        self,
        owner_id: str,
        identity_token: str,
        phone_id: Optional[str],
        display_name: Optional[str],
    ) -> None:
        payload: Dict[str, Any] = {
            "event": "account.disconnected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "owner_id": owner_id,
            "identity_token": identity_token,
            "phone_id": phone_id,
            "display_name": display_name,
        }
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["X-Webhook-Token"] = self._token
        try:
            response = await self._http.post(self._url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LINK_NOTIFY_ERRORS_TOTAL.inc()
            LOGGER.error(
                "stage=notify_fail identity=%s error=%s", identity_token, exc
            )
            return
        LOGGER.info("stage=notify_ok identity=%s owner_id=%s", identity_token, owner_id)

    async def aclose(self) -> None:
        await self._http.aclose()


__all__ = ["LogNotifier", "Notifier", "WebhookNotifier"]
