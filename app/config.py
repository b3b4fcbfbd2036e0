"""Merge service configuration using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Merge service settings.

    All fields can be overridden via environment variables with
    the COCOMERGE_ prefix (e.g., COCOMERGE_DB_PATH).
    """

    db_path: Path = Path("data/cocomerge.duckdb")
    # Any fsspec URL: a local directory, memory://, s3://bucket, gs://bucket
    object_store_url: str = "data/objects"
    copy_concurrency: int = 5
    merge_timeout_seconds: float = 600.0
    merge_progress_ttl_seconds: float = 300.0
    host: str = "0.0.0.0"
    port: int = 8000
    frontend_origin: str = "http://localhost:3000"
    behind_proxy: bool = False

    model_config = {
        "env_prefix": "COCOMERGE_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings (singleton)."""
    return Settings()
