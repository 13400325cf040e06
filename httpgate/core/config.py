from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="HTTPGATE_", extra="ignore"
    )

    # Request defaults applied by HttpClient() when no ClientDefaults are given
    base_url: str = ""
    timeout: float | None = None  # seconds per attempt; None = unbounded
    retry: int = 0
    retry_delay: float = 1.0  # base delay for exponential backoff (seconds)
    cache_ttl: float = 300.0  # seconds
    concurrency: int = 0  # max in-flight requests; 0 = unbounded
    default_headers: dict[str, str] = {}

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Metrics
    metrics_enabled: bool = True


settings = Settings()
