from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite+pysqlite:///./jobrelay.db"
    redis_url: str = ""

    # "sql" for the durable table, "memory" for tests / throwaway runs
    store_backend: str = "sql"

    wakeup_queue: str = "jobrelay:wakeups"
    status_channel: str = "jobrelay:status"

    log_level: str = "INFO"

    # run processor + scraper inside the API process
    embedded_worker: bool = True

    # processor
    poll_interval_seconds: float = 30
    batch_size: int = 10
    concurrency: int = 5
    max_attempts: int = 3
    retry_base_seconds: float = 5
    retry_max_seconds: float = 3600
    sweep_interval_seconds: float = 30
    cleanup_after_days: int = 30
    stale_after_seconds: float = 1800

    # scraping
    scrape_enabled: bool = True
    scrape_priority: str = "MEDIUM"
    scrape_reconcile_seconds: float = 300
    scrape_min_interval_seconds: float = 5
    scrape_window_seconds: float = 60
    scrape_max_targets: int = 10

    # live channel
    max_subscribers: int = 100
    heartbeat_seconds: float = 30
    missed_heartbeats: int = 2
    subscriber_buffer: int = 100

settings = Settings()
