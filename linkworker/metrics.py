from __future__ import annotations

from prometheus_client import Counter, Gauge


LINK_SESSIONS_LINKED = Gauge(
    "link_sessions_linked",
    "Number of identities with a live, registered connection",
)
LINK_SESSIONS_PAIRING = Gauge(
    "link_sessions_pairing",
    "Number of pairing attempts in progress",
)
LINK_PAIRING_TOTAL = Counter(
    "link_pairing_total",
    "Pairing attempts grouped by outcome",
    labelnames=("result",),
)
LINK_RECONNECT_ATTEMPTS_TOTAL = Counter(
    "link_reconnect_attempts_total",
    "Scheduled reconnection attempts grouped by phase",
    labelnames=("phase",),
)
LINK_TERMINAL_DISCONNECTS_TOTAL = Counter(
    "link_terminal_disconnects_total",
    "Sessions that reached a terminal disconnect grouped by reason",
    labelnames=("reason",),
)
LINK_CREDENTIAL_SAVE_FAILURES_TOTAL = Counter(
    "link_credential_save_failures_total",
    "Credential snapshots that could not be persisted",
)
LINK_RESTORE_TOTAL = Counter(
    "link_restore_total",
    "Boot-time restoration results",
    labelnames=("result",),
)
LINK_NOTIFY_ERRORS_TOTAL = Counter(
    "link_notify_errors_total",
    "Disconnect notifications that could not be delivered",
)

__all__ = [
    "LINK_SESSIONS_LINKED",
    "LINK_SESSIONS_PAIRING",
    "LINK_PAIRING_TOTAL",
    "LINK_RECONNECT_ATTEMPTS_TOTAL",
    "LINK_TERMINAL_DISCONNECTS_TOTAL",
    "LINK_CREDENTIAL_SAVE_FAILURES_TOTAL",
    "LINK_RESTORE_TOTAL",
    "LINK_NOTIFY_ERRORS_TOTAL",
]
