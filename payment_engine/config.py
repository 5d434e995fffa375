"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./payment_engine.db"
    log_level: str = "INFO"
    default_currency: str = "USD"

    # Attempt cap per intent
    max_attempts: int = 5

    # Bounded wait for every gateway call
    provider_timeout_seconds: float = 10.0

    # Out-of-band confirmation polling
    poll_interval_seconds: float = 3.0
    poll_timeout_seconds: float = 300.0

    # Backoff for transient gateway errors
    retry_max_retries: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0

    mock_failure_rate: float = 0.05  # 5% simulated gateway failure rate
    mock_latency_ms: int = 100  # Simulated gateway latency
    redirect_base_url: str = "https://sandbox-api.iyzipay.com"
    hosted_page_base_url: str = "https://www.sandbox.paypal.com"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
