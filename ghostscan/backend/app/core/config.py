"""
GhostScan Core Settings — follower ingestion & ghost-scoring pipeline.

Every knob is overridable through ``GHOSTSCAN_*`` environment variables or
a local ``.env`` file.
"""
from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8",
        env_prefix="GHOSTSCAN_", case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "GhostScan"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    api_prefix: str = "/api/v1"
    cors_origins: List[str] = ["*"]

    # ── PostgreSQL ───────────────────────────────────────────────────────
    db_host: str = "postgres"
    db_port: int = 5432
    db_user: str = "ghostscan"
    db_password: str = "ghostscan_secret"
    db_name: str = "ghostscan"
    db_echo: bool = False
    # Full URL override (tests point this at sqlite+aiosqlite)
    db_url: str = ""

    @property
    def database_url(self) -> str:
        if self.db_url:
            return self.db_url
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # ── Redis / Celery ───────────────────────────────────────────────────
    celery_broker_url: str = "redis://redis:6379/1"
    celery_result_backend: str = "redis://redis:6379/2"

    # "celery" hands scans to the worker fleet, "inline" runs them as
    # background tasks inside the API process.
    scan_executor: str = "celery"

    # ── Uploads ──────────────────────────────────────────────────────────
    upload_dir: str = "/app/data/uploads"
    upload_chunk_bytes: int = 1024 * 1024
    max_upload_bytes: int = 250 * 1024 * 1024
    max_uncompressed_bytes: int = 1024 * 1024 * 1024
    # Interaction members are decoded whole; this caps the memory one of them can take.
    max_interaction_member_bytes: int = 16 * 1024 * 1024

    # ── Admission ────────────────────────────────────────────────────────
    # Average uncompressed bytes per follower entry, used for the pre-parse
    # estimate. Errs low so the post-parse check stays authoritative.
    follower_estimate_bytes: int = 250

    # ── Pipeline ─────────────────────────────────────────────────────────
    scan_timeout_seconds: int = 900
    stale_scan_check_seconds: int = 300
    # Queued scans untouched this long are handed to the executor again
    queued_redispatch_seconds: int = 600
    max_malformed_ratio: float = 0.5
    bulk_insert_chunk_size: int = 1000

    # ── Follower queries ─────────────────────────────────────────────────
    default_page_size: int = 50
    max_page_size: int = 200
    export_batch_size: int = 1000


@lru_cache()
def get_settings() -> Settings:
    return Settings()
