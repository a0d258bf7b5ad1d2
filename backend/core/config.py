"""Core configuration with Pydantic v2 Settings."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    app_env: str = "development"
    database_url: str = "sqlite:///dunning.db"
    log_level: str = "INFO"
    enable_metrics: bool = True

    # Batch processing
    DUNNING_CHUNK_SIZE: int = 100
    DUNNING_MAX_WORKERS: int = 4
    # Calendar used to normalize "today" and due-date timestamps
    DUNNING_TIMEZONE: str = "UTC"

    # Delivery transport: 'stdout' (dry run) or 'webhook'
    DUNNING_DELIVERY_TRANSPORT: str = "stdout"
    DUNNING_WEBHOOK_URL: str = ""
    DUNNING_DELIVERY_TIMEOUT_MS: int = 3000
    DUNNING_WEBHOOK_SUCCESS_CODES: str = "200-299"

    # Max (obligation, template) pairs processed per dispatch run; 0 = unlimited
    DUNNING_DISPATCH_LIMIT: int = 0

    # Defaults for rendered content
    DUNNING_COMPANY_NAME: str = "0Admin"
    DUNNING_PAYMENT_LINK: str = ""
    DUNNING_REPLY_TO: str = ""


# Global settings instance
settings = Settings()
