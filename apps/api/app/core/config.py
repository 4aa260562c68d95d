from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Pipeline CRM API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./pipeline_crm.db"
    database_echo: bool = False
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    authz_default_allow: bool = True
    metrics_enabled: bool = False
    otel_enabled: bool = False
    default_page_size: int = 20
    max_page_size: int = 100
    search_default_limit: int = 20

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
