from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    APP_NAME: str = "certflow"
    LOG_LEVEL: str = "WARNING"

    # Database (postgresql+asyncpg://... is also supported)
    DATABASE_URL: str = "sqlite+aiosqlite:///./certflow.db"

    # Telemetry exporters write to stderr
    TRACING_ENABLED: bool = False
    METRICS_ENABLED: bool = False

    # Certificate defaults
    DEFAULT_DIGEST: str = "SHA256"
    DEFAULT_KEY_LENGTH: int = 2048
    DEFAULT_CERT_DAYS: int = 1825

    # CA defaults
    DEFAULT_CA_KEY_LENGTH: int = 4096
    DEFAULT_CA_DAYS: int = 3650
    DEFAULT_CRL_DAYS: int = 30


settings = Settings()
