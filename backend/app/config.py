"""Configuration settings for the todosync backend."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Storage
    storage_backend: Literal["sqlite", "supabase"] = "sqlite"
    database_path: str = "./data/todos.db"
    # Hosted store (only read when storage_backend == "supabase")
    supabase_url: str | None = None
    supabase_secret_key: str | None = None

    # JWT
    jwt_secret_key: str  # Required - no default for security
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 7  # 1 week

    # Sync
    sync_max_batch_size: int = 1000
    # Who wins when server and client updated_at are exactly equal
    sync_tie_break: Literal["client", "server"] = "client"

    # App
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
