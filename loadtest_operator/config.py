"""
Application Configuration using Pydantic Settings

Loads configuration from environment variables with sensible defaults.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # ========================================================================
    # Application Settings
    # ========================================================================
    APP_HOST: str = "127.0.0.1"
    APP_PORT: int = 8000
    APP_RELOAD: bool = False

    # ========================================================================
    # Worker Discovery (label selector contract)
    # ========================================================================
    APP_LABEL: str = "k6"
    OWNER_LABEL: str = "k6_cr"
    RUNNER_LABEL: str = "runner"

    # ========================================================================
    # Worker Status Endpoint
    # ========================================================================
    WORKER_STATUS_PORT: int = 6565
    WORKER_STATUS_PATH: str = "/v1/status"
    WORKER_DNS_SUFFIX: str = "svc.cluster.local"

    # Probes run sequentially inside one reconcile, so a single unreachable
    # worker must not stall the loop for longer than this.
    WORKER_PROBE_TIMEOUT_SECONDS: float = 3.0

    # ========================================================================
    # Cloud Control-Plane
    # ========================================================================
    CLOUD_DEFAULT_HOST: str = "https://ingest.k6.io"
    CLOUD_HOST_ENV_VAR: str = "K6_CLOUD_HOST"
    CLOUD_TOKEN_SECRET_KEY: str = "token"
    CLOUD_REQUEST_TIMEOUT_SECONDS: float = 10.0

    # ========================================================================
    # Reconcile Scheduling
    # ========================================================================
    STARTED_POLL_INTERVAL_SECONDS: float = 15.0
    STOPPED_REQUEUE_SECONDS: float = 1.0
    TOKEN_RETRY_SECONDS: float = 1.0
    START_JOBS_RETRY_SECONDS: float = 5.0

    # One in-flight reconcile for the whole process by default. Raising this
    # lets distinct runs reconcile in parallel; a single run is never
    # processed twice at once regardless.
    MAX_CONCURRENT_RECONCILES: int = 1
    RECONCILE_TIMEOUT_SECONDS: float = 120.0

    # Per-item exponential backoff after a failed reconcile.
    BACKOFF_BASE_SECONDS: float = 0.005
    BACKOFF_MAX_SECONDS: float = 1000.0

    @field_validator("MAX_CONCURRENT_RECONCILES")
    @classmethod
    def _at_least_one_worker(cls, v: int) -> int:
        if v < 1:
            raise ValueError("MAX_CONCURRENT_RECONCILES must be >= 1")
        return v

    # ========================================================================
    # Logging Settings
    # ========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(levelprefix)s %(asctime)s - %(name)s - %(run_ref)s%(message)s"


# Create global settings instance
settings = Settings()
