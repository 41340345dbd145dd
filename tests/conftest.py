"""
Pytest configuration and fixtures for Fleetvisor tests.
"""

import asyncio
import itertools
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fleetvisor.supervisor.process_handle import ProcessHandle, SignalKind, SpawnSpec
from fleetvisor.supervisor.protocol import (
    HealthCheckRequest,
    HealthCheckResponse,
    IPCMessage,
    ShutdownCommand,
)
from fleetvisor.supervisor.supervisor import Supervisor

_pids = itertools.count(10000)


class FakeProcessHandle(ProcessHandle):
    """In-memory process handle.

    Behaviour is controlled by flags: ``fail_spawn`` makes ``spawn`` raise,
    ``exit_on_shutdown`` makes the fake exit 0 when it receives a
    ``ShutdownCommand`` and ``auto_health`` makes it answer health checks.
    SIGKILL always terminates it; SIGTERM only when ``exit_on_terminate``.
    """

    def __init__(
        self,
        spec: SpawnSpec,
        fail_spawn: bool = False,
        exit_on_shutdown: bool = True,
        exit_on_terminate: bool = True,
        auto_health: bool = True,
    ):
        super().__init__(spec)
        self.fail_spawn = fail_spawn
        self.exit_on_shutdown = exit_on_shutdown
        self.exit_on_terminate = exit_on_terminate
        self.auto_health = auto_health
        self.alive = False
        self.spawned = False
        self.returncode: Optional[int] = None
        self.sent: List[IPCMessage] = []
        self.signals: List[SignalKind] = []
        self._pid: Optional[int] = None

    @property
    def pid(self) -> Optional[int]:
        return self._pid

    async def spawn(self) -> None:
        if self.fail_spawn:
            raise OSError("No such file or directory")
        self.spawned = True
        self.alive = True
        self._pid = next(_pids)

    def signal(self, kind: SignalKind) -> None:
        self.signals.append(kind)
        if not self.alive:
            return
        if kind == SignalKind.KILL:
            asyncio.get_running_loop().call_soon(self.exit, -9)
        elif self.exit_on_terminate:
            asyncio.get_running_loop().call_soon(self.exit, -15)

    def is_alive(self) -> bool:
        return self.alive

    async def send(self, message: IPCMessage) -> None:
        if not self.alive:
            raise ConnectionError(f"Channel to {self.spec.unit_id} is closed")
        self.sent.append(message)

        loop = asyncio.get_running_loop()
        if isinstance(message, ShutdownCommand) and self.exit_on_shutdown:
            loop.call_soon(self.exit, 0)
        elif isinstance(message, HealthCheckRequest) and self.auto_health:
            loop.call_soon(self.emit, HealthCheckResponse(correlation_id=message.correlation_id, detail="ok"))

    def emit(self, message: IPCMessage) -> None:
        """Simulate the worker sending a message."""
        if self.alive:
            self._dispatch(message)

    def exit(self, returncode: int = 0) -> None:
        """Simulate the process exiting."""
        if not self.alive:
            return
        self.alive = False
        self.returncode = returncode
        self._notify_exit(returncode)

    def sent_of(self, message_type) -> List[IPCMessage]:
        return [m for m in self.sent if isinstance(m, message_type)]


class FakeHandleFactory:
    """Handle factory recording every handle it creates.

    ``options`` apply to every handle created afterwards; ``per_unit``
    overrides them for a given unit id.
    """

    def __init__(self):
        self.options: Dict = {}
        self.per_unit: Dict[str, Dict] = {}
        self.handles: List[FakeProcessHandle] = []
        self.specs: List[SpawnSpec] = []

    def __call__(self, spec: SpawnSpec) -> FakeProcessHandle:
        options = {**self.options, **self.per_unit.get(spec.unit_id, {})}
        handle = FakeProcessHandle(spec, **options)
        self.specs.append(spec)
        self.handles.append(handle)
        return handle

    def handles_for(self, unit_id: str) -> List[FakeProcessHandle]:
        return [h for h in self.handles if h.spec.unit_id == unit_id]

    def latest(self, unit_id: str) -> FakeProcessHandle:
        return self.handles_for(unit_id)[-1]

    def spawn_count(self, unit_id: Optional[str] = None) -> int:
        return len([h for h in self.handles if h.spawned and (unit_id is None or h.spec.unit_id == unit_id)])


@pytest.fixture
def fake_factory():
    return FakeHandleFactory()


@pytest.fixture
def supervisor(fake_factory):
    return Supervisor(
        handle_factory=fake_factory,
        log_capacity=10,
        stop_grace_period=0.2,
        health_timeout=0.1,
    )


@pytest.fixture(autouse=True)
def clean_fleetvisor_env(monkeypatch):
    """Keep the developer's FLEETVISOR_* settings out of the tests."""
    import os
    for key in list(os.environ):
        if key.upper().startswith("FLEETVISOR_"):
            monkeypatch.delenv(key)
