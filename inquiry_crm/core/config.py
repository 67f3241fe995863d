from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Inquiry CRM API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./inquiry_crm.db"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    rate_limit_disabled: bool = False
    rate_limit_mutations_per_minute: int = 60
    rate_limit_max_tracked_clients: int = 10000
    audit_max_entries: int = 10000
    metrics_enabled: bool = False
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str | None = None
    otel_console_exporter: bool = False
    app_version: str = "0.1.0"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
