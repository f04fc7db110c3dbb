from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_NON_US_LOCATIONS = [
    "CANADA",
    "UNITED KINGDOM",
    "ENGLAND",
    "SCOTLAND",
    "IRELAND",
    "GERMANY",
    "FRANCE",
    "SPAIN",
    "PORTUGAL",
    "NETHERLANDS",
    "POLAND",
    "ROMANIA",
    "UKRAINE",
    "SWEDEN",
    "DENMARK",
    "NORWAY",
    "FINLAND",
    "SWITZERLAND",
    "AUSTRIA",
    "ITALY",
    "ISRAEL",
    "INDIA",
    "PAKISTAN",
    "PHILIPPINES",
    "SINGAPORE",
    "JAPAN",
    "KOREA",
    "CHINA",
    "AUSTRALIA",
    "NEW ZEALAND",
    "MEXICO",
    "BRAZIL",
    "ARGENTINA",
    "COLOMBIA",
    "EUROPE",
    "EMEA",
    "APAC",
    "LATAM",
]

DEFAULT_TRACKER_DOMAINS = [
    "appcast.io",
    "clickcast.co",
    "jobtarget.com",
    "recruitics.com",
    "joveo.com",
    "pandologic.com",
]


class Settings(BaseSettings):
    app_name: str = "feedwatch-api"
    environment: str = "dev"
    log_level: str = "INFO"
    store_backend: str = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0

    feeds_per_task: int = 100
    feed_concurrency: int = 10
    job_write_concurrency: int = 20
    writer_max_in_flight: int = 50
    writer_max_attempts: int = 3
    fetch_timeout_seconds: float = 15.0
    fetch_max_retries: int = 2
    fetch_backoff_base_seconds: float = 0.5
    update_window_minutes: int = 60
    keep_empty_location: bool = True
    non_us_locations: list[str] = Field(default_factory=lambda: list(DEFAULT_NON_US_LOCATIONS))
    content_max_chars: int = 20000
    tracker_domains: list[str] = Field(default_factory=lambda: list(DEFAULT_TRACKER_DOMAINS))
    conflict_policy: str = "ignore"
    error_samples_limit: int = 10
    heartbeat_every_feeds: int = 20
    retention_days: int = 21
    purge_page_size: int = 400

    max_concurrent_tasks: int = 50
    task_max_attempts: int = 3
    task_retry_base_seconds: int = 10
    task_retry_max_seconds: int = 600
    task_lease_seconds: int = 540
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    lease_reaper_interval_seconds: float = 60.0
    lease_reaper_batch_size: int = 100
    poll_schedule_interval_seconds: float = 1800.0
    cleanup_schedule_interval_seconds: float = 86400.0
    worker_schedules_enabled: bool = True

    otel_enabled: bool = True
    otel_service_name: str = "feedwatch"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="FW_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
