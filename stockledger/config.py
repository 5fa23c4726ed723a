from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "Stock Ledger"
    DATABASE_URL: str = "sqlite:///./stockledger.db"
    LOG_LEVEL: str = "INFO"

    # SQLite waits this long on a locked database before giving up
    SQLITE_BUSY_TIMEOUT_SECONDS: float = 30.0

    # Read-side stock cache
    STOCK_CACHE_TTL_SECONDS: float = 60.0
    STOCK_CACHE_MAX_ENTRIES: int = 1000

    # Write path
    LEDGER_MAX_RETRIES: int = 3
    LEDGER_RETRY_BACKOFF_SECONDS: float = 0.05
    RECORD_TIMEOUT_SECONDS: float = 0.0  # 0 disables the per-call deadline

    MAX_BULK_ADJUSTMENTS: int = 100

    HISTORY_DEFAULT_LIMIT: int = 50
    HISTORY_MAX_LIMIT: int = 1000

    LOW_STOCK_THRESHOLD: int = 5

    # Audit webhook: list of receiver URLs (comma-separated)
    AUDIT_WEBHOOK_URLS: str = ""
    AUDIT_WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    model_config = {"env_file": ".env"}


settings = Settings()
