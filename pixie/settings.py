from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings, read from PIXIE_* environment variables or a .env file."""

    model_config = SettingsConfigDict(env_prefix="PIXIE_", env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # shared secret for pixel creation; creation answers 500 while unset
    api_key: Optional[str] = None

    store_backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379/0"

    # one store listing page per report
    event_page_limit: int = 1000

    # absolute base for pixelUrl/eventsUrl; falls back to the request's own base URL
    public_base_url: Optional[str] = None

    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8123


@lru_cache()
def get_settings() -> Settings:
    return Settings()
