import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_currency: str,
        lock_retry_attempts: int,
        lock_retry_max_wait_secs: float,
        recurring_hour: int,
        recurring_minute: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_currency = default_currency
        self.lock_retry_attempts = lock_retry_attempts
        self.lock_retry_max_wait_secs = lock_retry_max_wait_secs
        self.recurring_hour = recurring_hour
        self.recurring_minute = recurring_minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    default_currency = os.getenv("LEDGER_DEFAULT_CURRENCY", "INR").upper()
    lock_retry_attempts = int(os.getenv("LEDGER_LOCK_RETRY_ATTEMPTS", "3"))
    lock_retry_max_wait_secs = float(
        os.getenv("LEDGER_LOCK_RETRY_MAX_WAIT_SECS", "2")
    )
    recurring_hour = int(os.getenv("LEDGER_RECURRING_HOUR", "3"))
    recurring_minute = int(os.getenv("LEDGER_RECURRING_MINUTE", "15"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_currency=default_currency,
        lock_retry_attempts=max(1, lock_retry_attempts),
        lock_retry_max_wait_secs=lock_retry_max_wait_secs,
        recurring_hour=recurring_hour,
        recurring_minute=recurring_minute,
    )
