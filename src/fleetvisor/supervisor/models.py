"""Data models for the supervisor."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from fleetvisor.supervisor.log_aggregator import LogBuffer
from fleetvisor.supervisor.process_handle import ProcessHandle

MASK_LENGTH = 12
MASK_MAX_REVEAL = 4


class UnitState(str, Enum):
    """Lifecycle state of a managed unit."""
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERRORED = "errored"


ACTIVE_STATES = (UnitState.STARTING, UnitState.RUNNING)
TERMINAL_STATES = (UnitState.STOPPED, UnitState.ERRORED)


def mask_credential(credential: str) -> str:
    """Display-safe projection of a credential.

    Always ``MASK_LENGTH`` characters. At most a quarter of the credential
    (and never more than ``MASK_MAX_REVEAL`` characters) is revealed.
    """
    reveal = min(MASK_MAX_REVEAL, len(credential) // 4)
    return credential[:reveal].ljust(MASK_LENGTH, "*")


@dataclass
class PendingHealthCheck:
    """The single outstanding health probe of a unit."""

    correlation_id: str
    future: asyncio.Future
    timer: asyncio.TimerHandle
    sent_at: float


@dataclass
class ManagedUnit:
    """One supervised worker process plus its identity and lifecycle state."""

    unit_id: str
    # Sole stored truth for relaunching; only ever masked on the way out
    credential: str = field(repr=False)
    logs: LogBuffer = field(repr=False)
    state: UnitState = UnitState.STARTING
    handle: Optional[ProcessHandle] = field(default=None, repr=False)
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    last_error: Optional[str] = None
    exit_code: Optional[int] = None
    display_name: Optional[str] = None
    ready: bool = False
    status_fields: Dict[str, Any] = field(default_factory=dict)
    pending_health: Optional[PendingHealthCheck] = field(default=None, repr=False)
    stop_timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)
    exited: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def is_running(self) -> bool:
        return self.state == UnitState.RUNNING

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid if self.handle else None

    @property
    def masked_credential(self) -> str:
        return mask_credential(self.credential)

    @property
    def uptime(self) -> Optional[float]:
        """Get unit uptime in seconds."""
        if self.started_at and self.is_running:
            return (datetime.now(timezone.utc) - self.started_at).total_seconds()
        return None

    def cancel_stop_timer(self) -> None:
        if self.stop_timer is not None:
            self.stop_timer.cancel()
            self.stop_timer = None
