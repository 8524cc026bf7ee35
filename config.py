import os
from functools import lru_cache
from pathlib import Path

INVALIDATION_MODES = ("atomic", "deferred")


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        invalidation_mode: str,
        busy_timeout_ms: int,
        index_retry_attempts: int,
        index_retry_delay_secs: float,
    ) -> None:
        if invalidation_mode not in INVALIDATION_MODES:
            raise ValueError(f"Unsupported invalidation mode: {invalidation_mode}")
        self.database_url = database_url
        self.timezone = timezone
        self.invalidation_mode = invalidation_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.index_retry_attempts = index_retry_attempts
        self.index_retry_delay_secs = index_retry_delay_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    invalidation_mode = os.getenv("LEDGER_INVALIDATION_MODE", "atomic").lower()
    busy_timeout_ms = int(os.getenv("LEDGER_BUSY_TIMEOUT_MS", "4000"))
    index_retry_attempts = int(os.getenv("LEDGER_INDEX_RETRY_ATTEMPTS", "2"))
    index_retry_delay_secs = float(os.getenv("LEDGER_INDEX_RETRY_DELAY_SECS", "0.1"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        invalidation_mode=invalidation_mode,
        busy_timeout_ms=busy_timeout_ms,
        index_retry_attempts=index_retry_attempts,
        index_retry_delay_secs=index_retry_delay_secs,
    )
