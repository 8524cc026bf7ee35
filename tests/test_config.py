import pytest

from config import Settings, get_settings


def _settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite://",
        "timezone": "Europe/Berlin",
        "invalidation_mode": "atomic",
        "busy_timeout_ms": 4000,
        "index_retry_attempts": 2,
        "index_retry_delay_secs": 0.1,
    }
    values.update(overrides)
    return Settings(**values)


def test_unknown_invalidation_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        _settings(invalidation_mode="eventually")


def test_settings_read_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("LEDGER_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("LEDGER_INVALIDATION_MODE", "DEFERRED")
    monkeypatch.setenv("LEDGER_INDEX_RETRY_ATTEMPTS", "5")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.invalidation_mode == "deferred"
        assert settings.index_retry_attempts == 5
        assert settings.database_url == f"sqlite:///{tmp_path.resolve() / 'ledger.db'}"
    finally:
        get_settings.cache_clear()
