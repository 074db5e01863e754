import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        cache_ttl_secs: float,
        cache_sweep_secs: float,
        stats_debounce_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.cache_ttl_secs = cache_ttl_secs
        self.cache_sweep_secs = cache_sweep_secs
        self.stats_debounce_secs = stats_debounce_secs

    @property
    def sync_database_url(self) -> str:
        # alembic runs migrations with the blocking driver
        return self.database_url.replace("+aiosqlite", "")


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv(
        "LEDGER_DATABASE_URL", f"sqlite+aiosqlite:///{default_db}"
    )
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    cache_ttl_secs = float(os.getenv("LEDGER_CACHE_TTL_SECS", "300"))
    cache_sweep_secs = float(os.getenv("LEDGER_CACHE_SWEEP_SECS", "60"))
    stats_debounce_secs = float(os.getenv("LEDGER_STATS_DEBOUNCE_SECS", "0.3"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        cache_ttl_secs=cache_ttl_secs,
        cache_sweep_secs=cache_sweep_secs,
        stats_debounce_secs=stats_debounce_secs,
    )
