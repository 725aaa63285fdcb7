import pytest

from config import link_config


def test_defaults_without_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "DATABASE_URL",
        "LINK_STORE_BACKEND",
        "LINK_MAX_RECONNECT_ATTEMPTS",
        "LINK_RECONNECT_DELAY",
        "LINK_MIGRATION_TIMEOUT",
        "LINK_PAIRING_RETRY_DELAY",
        "LINK_RESTORE_CONCURRENCY",
        "LINK_NOTIFY_URL",
        "ADMIN_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)

    cfg = link_config()

    assert cfg.store_backend == "memory"
    assert cfg.max_reconnect_attempts == 5
    assert cfg.reconnect_delay == 5.0
    assert cfg.pairing_retry_delay == 3.0
    assert cfg.migration_timeout == 30.0
    assert cfg.restore_concurrency == 0
    assert cfg.notify_url is None
    assert cfg.admin_token is None


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@db/link")
    monkeypatch.setenv("LINK_RECONNECT_DELAY", "3s")
    monkeypatch.setenv("LINK_MAX_RECONNECT_ATTEMPTS", "7")
    monkeypatch.setenv("LINK_RESTORE_CONCURRENCY", "bogus")
    monkeypatch.setenv("ADMIN_TOKEN", "  token  ")

    cfg = link_config()

    assert cfg.store_backend == "postgres"
    assert cfg.reconnect_delay == 3.0
    assert cfg.max_reconnect_attempts == 7
    assert cfg.restore_concurrency == 0
    assert cfg.admin_token == "token"


def test_explicit_memory_backend_wins(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db/link")
    monkeypatch.setenv("LINK_STORE_BACKEND", "memory")

    assert link_config().store_backend == "memory"
