"""Environment-driven configuration for the link worker."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_PORT = 9000
STORE_BACKENDS = {"postgres", "memory"}


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def _optional(raw: str | None) -> Optional[str]:
    cleaned = (raw or "").strip()
    return cleaned or None


@dataclass(frozen=True, slots=True)
class LinkConfig:
    api_id: int
    api_hash: str
    device_model: str
    system_version: str
    app_version: str
    lang_code: str
    system_lang_code: str
    qr_ttl: float
    database_url: Optional[str]
    store_backend: str
    notify_url: Optional[str]
    webhook_secret: Optional[str]
    max_reconnect_attempts: int
    reconnect_delay: float
    pairing_retry_delay: float
    migration_timeout: float
    restore_concurrency: int
    http_timeout: float
    admin_token: Optional[str]
    port: int


def _resolve_backend(raw: str | None, database_url: Optional[str]) -> str:
    backend = (raw or "").strip().lower()
    if backend in STORE_BACKENDS:
        return backend
    return "postgres" if database_url else "memory"


def link_config() -> LinkConfig:
    database_url = _optional(os.getenv("DATABASE_URL"))
    lang = os.getenv("TG_LANG", "en").strip() or "en"

    return LinkConfig(
        api_id=_coerce_int(os.getenv("TELEGRAM_API_ID")),
        api_hash=(os.getenv("TELEGRAM_API_HASH") or "").strip(),
        device_model=os.getenv("TG_DEVICE_MODEL", "linkworker").strip() or "linkworker",
        system_version=os.getenv("TG_SYSTEM_VERSION", "1.0").strip() or "1.0",
        app_version=os.getenv("TG_APP_VERSION", "1.0").strip() or "1.0",
        lang_code=lang,
        system_lang_code=lang,
        qr_ttl=_parse_duration(os.getenv("TELEGRAM_QR_TTL"), default=120.0),
        database_url=database_url,
        store_backend=_resolve_backend(os.getenv("LINK_STORE_BACKEND"), database_url),
        notify_url=_optional(os.getenv("LINK_NOTIFY_URL")),
        webhook_secret=_optional(os.getenv("WEBHOOK_SECRET")),
        max_reconnect_attempts=max(
            0, _coerce_int(os.getenv("LINK_MAX_RECONNECT_ATTEMPTS"), 5)
        ),
        reconnect_delay=_parse_duration(os.getenv("LINK_RECONNECT_DELAY"), default=5.0),
        pairing_retry_delay=_parse_duration(
            os.getenv("LINK_PAIRING_RETRY_DELAY"), default=3.0
        ),
        migration_timeout=_parse_duration(
            os.getenv("LINK_MIGRATION_TIMEOUT"), default=30.0
        ),
        restore_concurrency=max(0, _coerce_int(os.getenv("LINK_RESTORE_CONCURRENCY"), 0)),
        http_timeout=_parse_duration(os.getenv("LINK_HTTP_TIMEOUT"), default=10.0),
        admin_token=_optional(os.getenv("ADMIN_TOKEN")),
        port=_coerce_int(os.getenv("LINKWORKER_PORT"), DEFAULT_PORT),
    )


__all__ = ["LinkConfig", "link_config"]
