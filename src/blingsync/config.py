from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./blingsync.db"
    bling_base_url: str = "https://www.bling.com.br/Api/v3"
    bling_redirect_uri: str = ""
    bling_timeout_seconds: float = 30.0
    sync_page_size: int = 100
    sync_delay_seconds: float = 0.0
    sync_hour: int = 3
    sync_log_retention_days: int = 90
    sync_stats_days: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
