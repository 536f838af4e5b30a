"""应用配置管理."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置（环境变量）."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # 123云盘开放平台配置
    pan123_client_id: str = ""
    pan123_client_secret: str = ""
    pan123_open_api_url: str = "https://open-api.123pan.com"
    pan123_task_api_url: str = "https://www.123pan.com"
    token_refresh_margin_hours: int = 24

    # 应用配置
    database_url: str = "sqlite+aiosqlite:///./magnetsync.db"
    http_timeout_seconds: int = 30

    # 巡检配置
    sweep_enabled: bool = True
    sweep_interval_minutes: int = 10
    feed_concurrency: int = 5
    download_concurrency: int = 3
    pending_batch_size: int = 10
    batch_delay_seconds: float = 1.0


@lru_cache
def get_settings() -> Settings:
    """获取应用配置（带缓存）."""
    return Settings()
