# api/app/config.py
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized application configuration.

    Loads environment variables from `.env` and provides
    typed access across API, worker, and sweeper.
    """

    # ─────────────────────────────────────────────
    # Pydantic Settings Config
    # ─────────────────────────────────────────────
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ─────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────
    database_url: str
    database_url_sync: str | None = None
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # ─────────────────────────────────────────────
    # Job intake
    # ─────────────────────────────────────────────
    max_file_ids: int = 100
    file_id_min: int = 10_000
    file_id_max: int = 100_000_000
    enqueue_max_attempts: int = 3
    enqueue_retry_delay: float = 0.2

    # ─────────────────────────────────────────────
    # Queue / Worker
    # ─────────────────────────────────────────────
    job_max_attempts: int = 3
    lease_seconds: float = 30.0
    worker_pool_size: int = 4
    worker_poll_interval: float = 1.0
    worker_poll_max_interval: float = 10.0
    embedded_workers: bool = False

    # ─────────────────────────────────────────────
    # Expiry Sweeper
    # ─────────────────────────────────────────────
    sweep_interval_seconds: float = 15.0
    stall_threshold_seconds: float = 120.0
    retention_seconds: float = 86_400.0
    orphan_grace_seconds: float = 60.0

    # ─────────────────────────────────────────────
    # Storage collaborator
    # ─────────────────────────────────────────────
    storage_dir: str = "/data/artifacts"
    storage_base_url: str = "http://localhost:8000/artifacts"
    storage_signing_secret: str = "change-me"
    access_link_ttl_seconds: int = 900

    # ─────────────────────────────────────────────
    # Retrieval collaborator (simulated)
    # ─────────────────────────────────────────────
    retrieval_delay_min: float = 0.5
    retrieval_delay_max: float = 2.0
    retrieval_transient_failure_rate: float = 0.0

    # ─────────────────────────────────────────────
    # Notifications
    # ─────────────────────────────────────────────
    notification_timeout_seconds: float = 5.0

    # ─────────────────────────────────────────────
    # Derived Properties
    # ─────────────────────────────────────────────
    @property
    def artifact_dir(self) -> Path:
        """
        Ensures artifact storage directory exists
        and returns Path object.
        """
        p = Path(self.storage_dir)
        p.mkdir(parents=True, exist_ok=True)
        return p

    @property
    def heartbeat_interval(self) -> float:
        return max(self.lease_seconds / 3, 0.05)


# ─────────────────────────────────────────────
# Cached Settings Instance
# ─────────────────────────────────────────────
@lru_cache
def get_settings() -> Settings:
    """
    Returns a cached Settings instance so config
    is only loaded once per process.
    """
    return Settings()
