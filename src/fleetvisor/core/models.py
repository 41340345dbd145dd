"""Read models returned across the supervisor's public boundary."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class UnitStatus(BaseModel):
    """Display-safe snapshot of a managed unit."""

    unit_id: str = Field(..., description="Stable unit identity")
    state: str = Field(..., description="Lifecycle state")
    masked_credential: str = Field(..., description="Display-safe credential projection")
    pid: Optional[int] = Field(None, description="OS process id while a handle is present")
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    uptime_seconds: Optional[float] = None
    last_error: Optional[str] = None
    exit_code: Optional[int] = None
    display_name: Optional[str] = Field(None, description="Name reported by the worker")
    ready: bool = Field(False, description="Worker signalled application readiness")
    status_fields: Dict[str, Any] = Field(default_factory=dict)
    log_count: int = 0
    resources: Optional[Dict[str, Any]] = None


class HealthResult(BaseModel):
    """Outcome of one health probe."""

    unit_id: str
    healthy: bool
    detail: Optional[str] = None
    correlation_id: Optional[str] = None
    latency_ms: Optional[float] = None


class BatchResult(BaseModel):
    """Per-id outcome of a fan-out operation. ``None`` means success."""

    operation: str
    results: Dict[str, Optional[str]] = Field(default_factory=dict)

    @property
    def succeeded(self) -> List[str]:
        return sorted(uid for uid, err in self.results.items() if err is None)

    @property
    def failed(self) -> Dict[str, str]:
        return {uid: err for uid, err in self.results.items() if err is not None}


class ReconcileResult(BaseModel):
    """What one reconciliation tick did."""

    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)

    @property
    def operation_count(self) -> int:
        return len(self.added) + len(self.removed)


class ShutdownReport(BaseModel):
    """Summary of a fleet-wide shutdown."""

    stopped: List[str] = Field(default_factory=list)
    forced: List[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
