"""Application configuration."""

import json
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _json_env(name: str) -> dict[str, int]:
    """Read a JSON object of integer limits from an environment variable."""
    raw = os.getenv(name)
    if not raw:
        return {}
    return {str(key): int(value) for key, value in json.loads(raw).items()}


class BackgroundTaskConfig(BaseModel):
    """Scheduling policy for the background task manager."""

    # Concurrency limits (0 = unlimited)
    default_concurrency: int | None = None
    provider_concurrency: dict[str, int] = Field(default_factory=dict)
    model_concurrency: dict[str, int] = Field(default_factory=dict)

    # Stall watchdog (milliseconds)
    stale_timeout_ms: int = 180_000  # 3 minutes
    min_runtime_guard_ms: int = 30_000  # 30 seconds

    # Polling and retention (milliseconds)
    poll_interval_ms: int = 2_000
    task_ttl_ms: int = 30 * 60 * 1000  # 30 minutes
    min_idle_time_ms: int = 5_000

    # Bounds on calls to the execution server (seconds)
    notify_timeout_s: float = 10.0
    abort_timeout_s: float = 10.0


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Environment
    env: str = os.getenv("APP_ENV", "development")
    api_secret_key: str = os.getenv("API_SECRET_KEY", "dev-secret-key")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Execution server
    opencode_url: str = os.getenv("OPENCODE_URL", "http://localhost:4096")
    opencode_directory: str | None = os.getenv("OPENCODE_DIRECTORY")
    opencode_timeout: float = float(os.getenv("OPENCODE_TIMEOUT", "30"))

    # Concurrency
    default_concurrency: int | None = (
        int(os.environ["DEFAULT_CONCURRENCY"])
        if os.getenv("DEFAULT_CONCURRENCY")
        else None
    )
    provider_concurrency: dict[str, int] = _json_env("PROVIDER_CONCURRENCY")
    model_concurrency: dict[str, int] = _json_env("MODEL_CONCURRENCY")

    # Timeouts (in milliseconds)
    stale_timeout_ms: int = int(os.getenv("STALE_TIMEOUT_MS", "180000"))  # 3 minutes
    min_runtime_guard_ms: int = int(os.getenv("MIN_RUNTIME_GUARD_MS", "30000"))
    poll_interval_ms: int = int(os.getenv("POLL_INTERVAL_MS", "2000"))
    task_ttl_ms: int = int(os.getenv("TASK_TTL_MS", "1800000"))  # 30 minutes

    def background_task_config(self) -> BackgroundTaskConfig:
        """Build the manager's scheduling policy from these settings."""
        return BackgroundTaskConfig(
            default_concurrency=self.default_concurrency,
            provider_concurrency=self.provider_concurrency,
            model_concurrency=self.model_concurrency,
            stale_timeout_ms=self.stale_timeout_ms,
            min_runtime_guard_ms=self.min_runtime_guard_ms,
            poll_interval_ms=self.poll_interval_ms,
            task_ttl_ms=self.task_ttl_ms,
        )


settings = Settings()
