"""
Replicator Configuration

Process-level settings for the MLS replication service. Per-source
configuration (MLS endpoints, resources, destinations, schedules) lives in
the user config module, see ``mls_replicator.sources``.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Replicator settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="REPLICATOR_",
        case_sensitive=False,
        extra="ignore",
    )

    # User config module exposing get_config()
    config_path: str = "./config/config.py"

    # Batch Store
    batch_dir: str = "./data/batches"
    batch_retention: Literal["move", "delete"] = "move"

    # HTTP Settings
    request_timeout: int = 300
    max_retries: int = 5
    retry_backoff: float = 2.0
    wait_time: float = 0.0  # Seconds between requests

    # Reconcile
    diff_executor: Literal["process", "thread"] = "process"
    diff_max_workers: int = 2
    reconcile_ids_per_request: int = 50

    # Event Emission Settings
    redis_url: str = "redis://localhost:6379"
    events_enabled: bool = False

    # Metrics Settings
    metrics_enabled: bool = True
    metrics_port: int = 9090

    # Circuit Breaker Settings
    circuit_breaker_enabled: bool = True
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_recovery_timeout: float = 60.0
    circuit_breaker_success_threshold: int = 2


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
