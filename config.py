import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        default_currency: str,
        import_batch_size: int,
        delete_batch_size: int,
        csv_max_bytes: int,
        csv_max_rows: int,
        log_level: str,
        sqlite_busy_timeout: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.default_currency = default_currency
        self.import_batch_size = import_batch_size
        self.delete_batch_size = delete_batch_size
        self.csv_max_bytes = csv_max_bytes
        self.csv_max_rows = csv_max_rows
        self.log_level = log_level
        self.sqlite_busy_timeout = sqlite_busy_timeout


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budgets.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("EXPENSES_TIMEZONE", "Europe/Oslo")
    csrf_secret = os.getenv(
        "EXPENSES_CSRF_SECRET",
        "3f1c9a6e0d5b48a2b7e4c1d09f8a6b2e5c7d3a1f0b9e8d7c6a5b4f3e2d1c0b9a",
    )
    default_currency = os.getenv("EXPENSES_DEFAULT_CURRENCY", "USD").strip().upper()
    import_batch_size = max(1, int(os.getenv("EXPENSES_IMPORT_BATCH_SIZE", "10")))
    delete_batch_size = max(1, int(os.getenv("EXPENSES_DELETE_BATCH_SIZE", "50")))
    csv_max_bytes = int(os.getenv("EXPENSES_CSV_MAX_BYTES", str(5 * 1024 * 1024)))
    csv_max_rows = int(os.getenv("EXPENSES_CSV_MAX_ROWS", "10000"))
    log_level = os.getenv("EXPENSES_LOG_LEVEL", "INFO").strip().upper()
    sqlite_busy_timeout = float(os.getenv("EXPENSES_SQLITE_BUSY_TIMEOUT", "15"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        default_currency=default_currency,
        import_batch_size=import_batch_size,
        delete_batch_size=delete_batch_size,
        csv_max_bytes=csv_max_bytes,
        csv_max_rows=csv_max_rows,
        log_level=log_level,
        sqlite_busy_timeout=sqlite_busy_timeout,
    )
