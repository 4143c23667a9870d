from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Tenant CRM API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./crm.db"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    default_page_limit: int = 50
    lead_duplicate_email_scope: Literal["open", "all"] = "open"
    conversion_default_stage: str = "Qualification"
    conversion_default_probability: int = 50
    conversion_default_close_days: int = 30
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"
    metrics_enabled: bool = False
    otel_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
