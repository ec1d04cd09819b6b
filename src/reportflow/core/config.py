from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    base_url: str = "http://localhost:8000"
    secret_key: str = "change-me"

    cors_origins: list[str] = ["*"]

    database_url: str = "sqlite:///./reportflow.db"
    database_echo: bool = False
    # Two reviewers deciding the same report contend for the SQLite write lock.
    sqlite_busy_timeout_seconds: float = 15.0

    redis_url: str = "redis://localhost:6379/0"
    # None: run tasks inline in dev and test, on the broker elsewhere.
    celery_task_always_eager: bool | None = None
    extraction_queue: str = "extraction"
    # A file left in processing this long (worker crash) may be claimed again.
    extraction_stale_minutes: int = 30

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "reportflow"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    init_admin_email: str | None = None
    init_admin_password: str | None = None

    access_token_exp_minutes: int = 60 * 24

    report_max_bytes: int = 50 * 1024 * 1024
    report_max_files: int = 10
    proof_max_bytes: int = 5 * 1024 * 1024
    notifications_page_size_max: int = 50


settings = Settings()
