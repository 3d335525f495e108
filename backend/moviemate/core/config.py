from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path
from typing import Optional

# __file__ is '.../backend/moviemate/core/config.py'
# .parent.parent is '.../backend/moviemate/'
# .parent.parent.parent is '.../backend/'
BACKEND_APP_DIR = Path(__file__).resolve().parent.parent
BACKEND_DIR = BACKEND_APP_DIR.parent


class Settings(BaseSettings):
    # --- TMDB catalog ---
    TMDB_API_KEY: Optional[str] = None
    TMDB_API_BASE_URL: str = "https://api.themoviedb.org/3"
    TMDB_IMAGE_BASE_URL: str = "https://image.tmdb.org/t/p"

    # TMDB allows 40 requests per 10 seconds
    RATE_LIMIT_REQUESTS: int = 40
    RATE_LIMIT_WINDOW_MS: int = 10_000
    CACHE_TTL_SECONDS: float = 300.0

    HTTP_TIMEOUT_SECONDS: float = 10.0
    HTTP_CONNECT_TIMEOUT_SECONDS: float = 3.0

    WATCH_PROVIDER_REGION: str = "TR"

    # --- General Settings ---
    DATABASE_URL: str = f"sqlite:///{BACKEND_DIR / 'moviemate.db'}"
    LOG_LEVEL: str = "INFO"

    @field_validator("TMDB_API_KEY")
    @classmethod
    def blank_api_key_is_none(cls, v: Optional[str]):
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("RATE_LIMIT_REQUESTS", "RATE_LIMIT_WINDOW_MS", "CACHE_TTL_SECONDS")
    @classmethod
    def validate_positive(cls, v, info):
        if v <= 0:
            raise ValueError(f"{info.field_name} must be greater than zero.")
        return v

    model_config = SettingsConfigDict(
        env_file=f"{BACKEND_DIR}/.env",
        env_file_encoding='utf-8',
        extra='ignore'
    )


settings = Settings()
