"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    app_secret_key: str
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (transaction locks + alert cooldowns)
    redis_url: str = "redis://localhost:6379/0"

    # Encryption for stored provider secrets
    encryption_key: str = ""

    # Sentry
    sentry_dsn: str = ""

    # Admin diagnostics auth
    dashboard_jwt_secret: str = ""
    dashboard_jwt_expiry_hours: int = 24

    # Provider fallbacks - used when no provider_credentials row exists
    hotmart_client_id: str = ""
    hotmart_client_secret: str = ""
    hotmart_basic_token: str = ""
    hotmart_webhook_secret: str = ""  # HMAC secret or legacy hottok
    hotmart_environment: str = "production"
    doppus_client_id: str = ""
    doppus_client_secret: str = ""
    doppus_webhook_secret: str = ""

    # Signature policy: False = accept-but-flag, True = record and refuse to apply
    reject_invalid_signatures: bool = False

    # Outbound provider API calls
    provider_api_timeout_seconds: float = 15.0
    credential_refresh_seconds: int = 300

    # Relay listener (separate process)
    relay_host: str = "0.0.0.0"
    relay_port: int = 9000
    main_app_internal_url: str = "http://127.0.0.1:8000"
    relay_forward_timeout_seconds: float = 15.0

    # Outbox recovery for records that never finished processing
    outbox_stale_seconds: int = 300
    outbox_poll_seconds: int = 60
    outbox_batch_size: int = 20

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
