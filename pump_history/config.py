"""Application configuration using Pydantic Settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pump history settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Database backing the document store
    database_url: str = "sqlite+aiosqlite:///./pump_history.db"

    # Logging
    log_format: str = "json"  # 'json' or 'text'
    log_level: str = "INFO"
    service_name: str = "pump-history"

    # Retention window for the canonical history log
    history_retention_hours: int = 24

    # Document keys
    pump_history_key: str = "monitor/pumphistory-24h-zoned.json"
    uploaded_treatments_key: str = "upload/uploaded-pumphistory.json"

    # Treatment origin tag sent as enteredBy
    treatment_entered_by: str = "pump-history"

    # Testing
    testing: bool = False  # Set to True during tests to disable connection pooling


settings = Settings()
