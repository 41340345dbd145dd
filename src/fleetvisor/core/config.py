"""Configuration management for Fleetvisor."""

from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Supervisor configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="FLEETVISOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Control API
    host: str = Field("0.0.0.0", description="Control API host")
    port: int = Field(8000, ge=1, le=65535, description="Control API port")

    # Observability
    log_level: str = Field("INFO", description="Log level")
    log_format: str = Field("json", description="json or console")
    metrics_enabled: bool = Field(True, description="Expose /metrics")
    control_token: Optional[str] = Field(
        None,
        description="Bearer token required by the control API, unset disables auth",
    )

    # Log retention
    log_capacity: int = Field(100, ge=1, description="Lines retained per unit")
    echo_logs: bool = Field(False, description="Echo captured lines to supervisor stdout")

    # Timers (seconds)
    stop_grace_period: float = Field(10.0, gt=0, description="Grace period before force kill")
    health_timeout: float = Field(5.0, gt=0, description="Health check timeout")
    shutdown_timeout: float = Field(30.0, gt=0, description="Fleet-wide shutdown deadline")
    reconcile_interval: float = Field(300.0, ge=0, description="Reconciliation interval, 0 disables")

    # Desired state
    desired_state_file: Optional[str] = Field(None, description="YAML file listing desired units")
    credentials: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Comma-separated credentials used when no desired-state file is set",
    )

    # Worker entry point
    worker_module: str = Field("fleetvisor.worker", description="Module launched with python -m")
    line_limit: int = Field(1024 * 1024, ge=1024, description="Longest worker output line kept whole, in bytes")

    @field_validator("credentials", mode="before")
    @classmethod
    def parse_credentials(cls, v):
        """Parse comma-separated credentials."""
        if v is None:
            return []
        if isinstance(v, str):
            return [c.strip() for c in v.split(",") if c.strip()]
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only json and console renderers are supported."""
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError(f"Invalid log format: {v}")
        return v
