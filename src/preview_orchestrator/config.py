"""
Environment-driven settings for the preview orchestrator.

Values come from the process environment or a local ``.env`` file. Only the Fly
API token is mandatory; everything else has a working default.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .fly_machines import DEFAULT_API_BASE_URL, DEFAULT_IMAGE
from .scheduler import SchedulerConfig


class Settings(BaseSettings):
    """Orchestrator configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = Field(default="development", description="Deployment environment")
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Render logs as JSON lines")
    host: str = Field(default="0.0.0.0", description="HTTP bind address")
    port: int = Field(default=8080, description="HTTP port")

    # Provisioning API
    fly_api_token: str = Field(..., description="Fly Machines API bearer token")
    fly_app_name: str = Field(default="preview-containers", description="Fly app namespace")
    fly_api_base_url: str = Field(default=DEFAULT_API_BASE_URL)
    preview_image: str = Field(default=DEFAULT_IMAGE, description="Preview container image")
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    machine_ready_timeout_seconds: float = Field(default=60.0, gt=0)
    machine_poll_interval_seconds: float = Field(default=2.0, gt=0)

    # Storage and collaborators
    session_db_path: str = Field(default="preview_sessions.db", description="SQLite database file")
    monitoring_webhook_url: str | None = Field(default=None, description="Critical alert webhook")
    supabase_url: str | None = Field(default=None, description="Auth and realtime backend URL")
    supabase_anon_key: str | None = Field(default=None)
    supabase_service_role_key: str | None = Field(default=None)

    # Reclamation and retention
    orphan_threshold_minutes: float = Field(default=60.0, gt=0)
    reconcile_after_seconds: float = Field(default=300.0, gt=0)
    metrics_retention: int = Field(default=1000, gt=0)
    events_retention: int = Field(default=500, gt=0)
    alerts_retention: int = Field(default=500, gt=0)

    # Job intervals
    cleanup_interval_seconds: float = Field(default=15 * 60, gt=0)
    monitoring_interval_seconds: float = Field(default=5 * 60, gt=0)
    orphan_cleanup_interval_seconds: float = Field(default=60 * 60, gt=0)
    timeout_enforcement_interval_seconds: float = Field(default=10 * 60, gt=0)
    metrics_collection_interval_seconds: float = Field(default=60, gt=0)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig(
            cleanup_interval=self.cleanup_interval_seconds,
            monitoring_interval=self.monitoring_interval_seconds,
            orphan_cleanup_interval=self.orphan_cleanup_interval_seconds,
            timeout_enforcement_interval=self.timeout_enforcement_interval_seconds,
            metrics_collection_interval=self.metrics_collection_interval_seconds,
        )

    def machine_env(self) -> dict[str, str]:
        """Environment passed into every preview container."""
        env = {}
        if self.supabase_url:
            env["SUPABASE_URL"] = self.supabase_url
        if self.supabase_anon_key:
            env["SUPABASE_ANON_KEY"] = self.supabase_anon_key
        return env


@lru_cache
def get_settings() -> Settings:
    return Settings()
