"""Central environment-driven settings shared by the ledger and webhook apps.

Each process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    environment: str = "production"
    postgres_dsn: str
    api_key: str
    redis_url: str = "redis://redis:6379/0"
    kafka_bootstrap_servers: str = "kafka:9092"
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    payment_webhook_secret: str | None = None
    generation_webhook_secret: str | None = None
    signature_tolerance_seconds: int = 300
    generation_stale_after_seconds: int = 1800
    max_generation_retries: int = 3
    default_generation_cost: int = 1
    event_replay_after_seconds: int = 120
    reconciliation_interval_seconds: int = 300
    store_retry_attempts: int = 3
    store_retry_base_delay_seconds: float = 0.2
    rate_limit_per_minute: int = 30
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


settings = CommonSettings()
