"""Application configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Productive (source) API
    productive_api_url: str = "https://api.productive.io/api/v2"
    productive_app_url: str = "https://app.productive.io"  # Base for task origin URLs

    # Linear (target) API
    linear_api_url: str = "https://api.linear.app/graphql"

    # HTTP
    http_timeout_seconds: float = 60.0

    # Fetch engine settings
    cooldown_seconds: float = 120.0  # Global pause after any upstream error
    fetch_max_retries: int = 5
    page_delay_seconds: float = 0.3  # Pause between successful page fetches
    task_page_size: int = 200
    comment_page_size: int = 50

    # Batch processor settings
    export_concurrency: int = 5  # Tasks processed concurrently per chunk
    chunk_delay_seconds: float = 0.3
    test_mode_sample_size: int = 5

    # Linear rate limiting
    linear_rate_limit_default_seconds: float = 180.0  # Used when no reset time is reported

    # Comment formatting
    display_timezone: str = "Europe/Zagreb"

    # Job retention
    enable_job_sweeper: bool = True
    job_ttl_hours: int = 24
    job_sweep_interval_minutes: int = 10

    # Progress stream
    stream_poll_interval_seconds: float = 0.5
    stream_close_delay_seconds: float = 1.0

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
