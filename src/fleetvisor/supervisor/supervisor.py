"""Supervisor core: owns the unit registry and every lifecycle transition."""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Dict, List, Optional, TextIO

import structlog

from fleetvisor.core.config import Settings
from fleetvisor.core.exceptions import (
    SpawnError,
    SupervisorShuttingDownError,
    UnitAlreadyRunningError,
    UnitNotFoundError,
)
from fleetvisor.core.models import BatchResult, HealthResult, UnitStatus
from fleetvisor.metrics import UNIT_TRANSITIONS, UNITS
from fleetvisor.supervisor.health import HealthMonitor
from fleetvisor.supervisor.log_aggregator import LogAggregator
from fleetvisor.supervisor.models import TERMINAL_STATES, ManagedUnit, UnitState
from fleetvisor.supervisor.process_handle import (
    ENV_UNIT_CREDENTIAL,
    ENV_UNIT_ID,
    HandleFactory,
    ProcessHandle,
    SignalKind,
    SpawnSpec,
    subprocess_factory,
)
from fleetvisor.supervisor.protocol import (
    ErrorReport,
    HealthCheckResponse,
    IPCMessage,
    LogLine,
    ReadyNotice,
    ShutdownCommand,
    StatusUpdate,
    UnitInfo,
)
from fleetvisor.supervisor.resources import get_process_stats

logger = structlog.get_logger()

# Slack on top of the grace period when waiting for a stop to resolve
EXIT_WAIT_MARGIN = 1.0


class Supervisor:
    """Manages a fleet of worker processes keyed by unit id.

    The registry has a single writer per key: every mutation of a
    ``ManagedUnit`` goes through a method of this class, and operations on
    the same id are serialized by a per-id lock.
    """

    def __init__(
        self,
        handle_factory: HandleFactory,
        log_capacity: int = 100,
        echo_logs: bool = False,
        stop_grace_period: float = 10.0,
        health_timeout: float = 5.0,
        echo_stream: Optional[TextIO] = None,
    ):
        self.handle_factory = handle_factory
        self.stop_grace_period = stop_grace_period
        self.units: Dict[str, ManagedUnit] = {}
        self.log_aggregator = LogAggregator(capacity=log_capacity, echo=echo_logs, echo_stream=echo_stream)
        self.health_monitor = HealthMonitor(timeout=health_timeout)
        self.started_at = datetime.now(timezone.utc)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._shutting_down = False

    @classmethod
    def from_settings(cls, settings: Settings, handle_factory: Optional[HandleFactory] = None) -> "Supervisor":
        """Build a supervisor from configuration."""
        return cls(
            handle_factory=handle_factory or subprocess_factory(settings.worker_module, line_limit=settings.line_limit),
            log_capacity=settings.log_capacity,
            echo_logs=settings.echo_logs,
            stop_grace_period=settings.stop_grace_period,
            health_timeout=settings.health_timeout,
        )

    # --- Registry queries ---

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def uptime(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()

    def unit_ids(self) -> List[str]:
        return sorted(self.units.keys())

    def is_active(self, unit_id: str) -> bool:
        unit = self.units.get(unit_id)
        return unit is not None and unit.is_active

    def _get(self, unit_id: str) -> ManagedUnit:
        unit = self.units.get(unit_id)
        if unit is None:
            raise UnitNotFoundError(unit_id)
        return unit

    @asynccontextmanager
    async def _unit_lock(self, unit_id: str) -> AsyncIterator[None]:
        """Serialise operations on one id.

        The lock is dropped once its last user leaves and the id is no
        longer registered, so removed and unknown ids do not accumulate.
        """
        lock = self._locks.get(unit_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[unit_id] = lock
        self._lock_users[unit_id] = self._lock_users.get(unit_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[unit_id] -= 1
            if not self._lock_users[unit_id]:
                del self._lock_users[unit_id]
                if unit_id not in self.units:
                    self._locks.pop(unit_id, None)

    # --- Single-unit operations ---

    async def start(self, unit_id: str, credential: str) -> UnitStatus:
        """Create the unit and spawn its worker.

        Returns once the process handle is live, not once the worker is
        application-ready.

        Raises:
            UnitAlreadyRunningError: If the unit is Starting or Running
            SupervisorShuttingDownError: If a fleet-wide shutdown is in progress
            SpawnError: If the process could not be launched
        """
        if self._shutting_down:
            raise SupervisorShuttingDownError()

        async with self._unit_lock(unit_id):
            await self._start_locked(unit_id, credential)
        return self.status(unit_id)

    async def stop(self, unit_id: str) -> UnitStatus:
        """Ask the unit to exit and arm its grace timer.

        Returns after the Stopping transition; the exit (or the forced kill
        when the grace period runs out) completes in the background.
        """
        async with self._unit_lock(unit_id):
            await self._stop_locked(self._get(unit_id))
        return self.status(unit_id)

    async def restart(self, unit_id: str) -> UnitStatus:
        """Stop the unit, wait for a confirmed exit, then start it again.

        Relaunches with the unit's own stored credential.
        """
        if self._shutting_down:
            raise SupervisorShuttingDownError()

        async with self._unit_lock(unit_id):
            unit = self._get(unit_id)
            credential = unit.credential
            logger.info("Restarting unit", unit_id=unit_id)

            if unit.state not in TERMINAL_STATES:
                await self._stop_locked(unit)
                await self._await_exit(unit)

            await self._start_locked(unit_id, credential)
        return self.status(unit_id)

    async def remove(self, unit_id: str) -> None:
        """Fully tear down a unit and drop it from the registry."""
        async with self._unit_lock(unit_id):
            unit = self._get(unit_id)
            if unit.state not in TERMINAL_STATES:
                await self._stop_locked(unit)
                await self._await_exit(unit)

            unit.cancel_stop_timer()
            self.health_monitor.cancel(unit, "removed")
            del self.units[unit_id]
            self.log_aggregator.drop(unit_id)

        self._refresh_gauge()
        logger.info("Unit removed", unit_id=unit_id)

    def kill(self, unit_id: str, reason: str = "Forced termination") -> None:
        """Non-cooperative termination. The unit ends Stopped."""
        unit = self._get(unit_id)
        if unit.state in TERMINAL_STATES:
            return
        self._force_terminate(unit, reason)

    async def wait_stopped(self, unit_id: str, timeout: Optional[float] = None) -> bool:
        """Wait until the unit is Stopped or Errored. Unknown ids count as stopped."""
        unit = self.units.get(unit_id)
        if unit is None or unit.state in TERMINAL_STATES:
            return True
        try:
            await asyncio.wait_for(unit.exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # --- Fan-out operations ---

    async def start_all(self) -> BatchResult:
        """Start every known unit that is not active, with its stored credential."""
        return await self._fan_out(
            "start_all",
            {
                uid: self.start(uid, unit.credential)
                for uid, unit in self.units.items()
                if not unit.is_active
            },
        )

    async def stop_all(self) -> BatchResult:
        return await self._fan_out(
            "stop_all",
            {uid: self.stop(uid) for uid, unit in self.units.items() if unit.state not in TERMINAL_STATES},
        )

    async def restart_all(self) -> BatchResult:
        return await self._fan_out("restart_all", {uid: self.restart(uid) for uid in self.units})

    async def _fan_out(self, operation: str, calls: Dict[str, Awaitable]) -> BatchResult:
        """Run per-id calls concurrently; one failure never aborts the batch."""
        ids = list(calls.keys())
        outcomes = await asyncio.gather(*calls.values(), return_exceptions=True)

        batch = BatchResult(operation=operation)
        for unit_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Batch operation failed for unit", operation=operation, unit_id=unit_id, error=str(outcome))
                batch.results[unit_id] = str(outcome) or outcome.__class__.__name__
            else:
                batch.results[unit_id] = None

        logger.info(
            "Batch operation finished",
            operation=operation,
            succeeded=len(batch.succeeded),
            failed=len(batch.failed),
        )
        return batch

    # --- Read operations ---

    def status(self, unit_id: str, with_resources: bool = False) -> UnitStatus:
        return self._snapshot(self._get(unit_id), with_resources)

    def status_all(self, with_resources: bool = False) -> List[UnitStatus]:
        return [self._snapshot(self.units[uid], with_resources) for uid in self.unit_ids()]

    def get_logs(self, unit_id: str, count: int = 50) -> List[str]:
        """Last ``min(count, capacity)`` captured lines, oldest first."""
        unit = self._get(unit_id)
        return [str(entry) for entry in unit.logs.tail(count)]

    def clear_logs(self, unit_id: str) -> None:
        self._get(unit_id)
        self.log_aggregator.clear_logs(unit_id)

    async def health_check(self, unit_id: str) -> HealthResult:
        return await self.health_monitor.check(self._get(unit_id))

    async def health_check_all(self) -> Dict[str, HealthResult]:
        units = [self.units[uid] for uid in self.unit_ids()]
        results = await asyncio.gather(*(self.health_monitor.check(unit) for unit in units))
        return {unit.unit_id: result for unit, result in zip(units, results)}

    def _snapshot(self, unit: ManagedUnit, with_resources: bool = False) -> UnitStatus:
        resources = None
        if with_resources and unit.pid and unit.is_running:
            stats = get_process_stats(unit.pid)
            if "error" not in stats:
                resources = stats

        return UnitStatus(
            unit_id=unit.unit_id,
            state=unit.state.value,
            masked_credential=unit.masked_credential,
            pid=unit.pid,
            started_at=unit.started_at,
            stopped_at=unit.stopped_at,
            uptime_seconds=unit.uptime,
            last_error=unit.last_error,
            exit_code=unit.exit_code,
            display_name=unit.display_name,
            ready=unit.ready,
            status_fields=dict(unit.status_fields),
            log_count=len(unit.logs),
            resources=resources,
        )

    # --- Shutdown support ---

    def begin_shutdown(self) -> None:
        """Refuse new starts from now on."""
        self._shutting_down = True

    # --- Internals (callers hold the unit's lock) ---

    async def _start_locked(self, unit_id: str, credential: str) -> ManagedUnit:
        if self._shutting_down:
            raise SupervisorShuttingDownError()

        previous = self.units.get(unit_id)
        if previous is not None:
            if previous.is_active:
                raise UnitAlreadyRunningError(unit_id)
            if previous.state == UnitState.STOPPING:
                await self._await_exit(previous)
            previous.cancel_stop_timer()
            self.health_monitor.cancel(previous, "replaced")

        unit = ManagedUnit(
            unit_id=unit_id,
            credential=credential,
            logs=self.log_aggregator.buffer_for(unit_id),
        )
        self.units[unit_id] = unit
        self._transition(unit, UnitState.STARTING)

        handle = self.handle_factory(
            SpawnSpec(
                unit_id=unit_id,
                env={ENV_UNIT_ID: unit_id, ENV_UNIT_CREDENTIAL: credential},
            )
        )
        handle.on_message(lambda message: self._handle_message(unit, handle, message))
        handle.on_exit(lambda returncode: self._handle_exit(unit, handle, returncode))
        unit.handle = handle

        try:
            await handle.spawn()
        except Exception as e:
            self._fail_start(unit, f"Spawn failed: {e}")
            logger.error("Failed to spawn unit", unit_id=unit_id, error=str(e))
            raise SpawnError(unit_id, str(e)) from e

        if unit.handle is not handle or not handle.is_alive():
            if unit.state == UnitState.STARTING:
                self._fail_start(unit, "Exited during startup")
            raise SpawnError(unit_id, unit.last_error or "exited during startup")

        unit.started_at = datetime.now(timezone.utc)
        self._transition(unit, UnitState.RUNNING)
        self._log(unit, "SUPERVISOR", f"Started with PID {handle.pid}")
        return unit

    def _fail_start(self, unit: ManagedUnit, reason: str) -> None:
        unit.handle = None
        unit.last_error = reason
        unit.stopped_at = datetime.now(timezone.utc)
        self._transition(unit, UnitState.ERRORED)
        self._log(unit, "ERROR", reason)
        unit.exited.set()

    async def _stop_locked(self, unit: ManagedUnit) -> None:
        if unit.state in TERMINAL_STATES:
            logger.debug("Unit already stopped", unit_id=unit.unit_id, state=unit.state.value)
            return
        if unit.state == UnitState.STOPPING:
            return

        handle = unit.handle
        self._transition(unit, UnitState.STOPPING)
        self._log(unit, "SUPERVISOR", "Stop requested")

        if handle is None:
            unit.stopped_at = datetime.now(timezone.utc)
            self._transition(unit, UnitState.STOPPED)
            unit.exited.set()
            return

        unit.cancel_stop_timer()
        loop = asyncio.get_running_loop()
        unit.stop_timer = loop.call_later(self.stop_grace_period, self._stop_deadline, unit, handle)

        try:
            await asyncio.wait_for(handle.send(ShutdownCommand()), timeout=self.stop_grace_period)
        except Exception as e:
            logger.warning("Shutdown command failed, sending SIGTERM", unit_id=unit.unit_id, error=str(e))
            handle.signal(SignalKind.TERMINATE)

    async def _await_exit(self, unit: ManagedUnit) -> None:
        """Wait for a Stopping unit to resolve; the grace timer bounds this."""
        try:
            await asyncio.wait_for(unit.exited.wait(), timeout=self.stop_grace_period + EXIT_WAIT_MARGIN)
        except asyncio.TimeoutError:
            self._force_terminate(unit, "Forced termination: exit not confirmed")

    def _stop_deadline(self, unit: ManagedUnit, handle: ProcessHandle) -> None:
        unit.stop_timer = None
        if unit.handle is not handle or unit.state != UnitState.STOPPING:
            return
        logger.warning("Unit did not stop gracefully, killing", unit_id=unit.unit_id, grace_period=self.stop_grace_period)
        self._force_terminate(unit, f"Forced termination after {self.stop_grace_period}s grace period")

    def _force_terminate(self, unit: ManagedUnit, reason: str) -> None:
        handle = unit.handle
        unit.cancel_stop_timer()
        if handle is not None:
            handle.signal(SignalKind.KILL)
        self.health_monitor.cancel(unit, "terminated")
        unit.handle = None
        unit.last_error = reason
        unit.stopped_at = datetime.now(timezone.utc)
        self._transition(unit, UnitState.STOPPED)
        self._log(unit, "SUPERVISOR", reason)
        unit.exited.set()

    # --- Handle callbacks ---

    def _is_current(self, unit: ManagedUnit, handle: ProcessHandle) -> bool:
        return self.units.get(unit.unit_id) is unit and unit.handle is handle

    def _handle_exit(self, unit: ManagedUnit, handle: ProcessHandle, returncode: Optional[int]) -> None:
        if not self._is_current(unit, handle):
            logger.debug("Ignoring exit of stale handle", unit_id=unit.unit_id, returncode=returncode)
            return

        unit.cancel_stop_timer()
        self.health_monitor.cancel(unit, "process exited")
        unit.handle = None
        unit.exit_code = returncode
        unit.stopped_at = datetime.now(timezone.utc)

        if unit.state == UnitState.STOPPING or self._shutting_down:
            self._transition(unit, UnitState.STOPPED)
            self._log(unit, "SUPERVISOR", f"Exited with code {returncode}")
        else:
            # No automatic restart: recovery is an explicit start/restart
            unit.last_error = f"Exited unexpectedly with code {returncode}"
            self._transition(unit, UnitState.ERRORED)
            self._log(unit, "ERROR", unit.last_error)
            logger.warning("Unit exited unexpectedly", unit_id=unit.unit_id, returncode=returncode)

        unit.exited.set()

    def _handle_message(self, unit: ManagedUnit, handle: ProcessHandle, message: IPCMessage) -> None:
        if not self._is_current(unit, handle):
            return

        if isinstance(message, LogLine):
            self._log(unit, message.stream, message.text)
        elif isinstance(message, HealthCheckResponse):
            self.health_monitor.resolve(unit, message)
        elif isinstance(message, ErrorReport):
            unit.last_error = message.message
            self._log(unit, "ERROR", message.message)
        elif isinstance(message, StatusUpdate):
            unit.status_fields.update(message.fields)
            self._log(unit, "STATUS", json.dumps(message.fields, default=str))
        elif isinstance(message, UnitInfo):
            unit.display_name = message.display_name
            self._log(unit, "IPC", f"Unit info: {message.display_name}")
        elif isinstance(message, ReadyNotice):
            unit.ready = True
            self._log(unit, "IPC", "Worker ready")
        else:
            logger.debug("Ignoring message", unit_id=unit.unit_id, kind=message.kind)

    # --- Bookkeeping ---

    def _transition(self, unit: ManagedUnit, state: UnitState) -> None:
        previous = unit.state
        unit.state = state
        UNIT_TRANSITIONS.labels(state=state.value).inc()
        self._refresh_gauge()
        logger.info("Unit state changed", unit_id=unit.unit_id, from_state=previous.value, to_state=state.value)

    def _refresh_gauge(self) -> None:
        counts = {state: 0 for state in UnitState}
        for unit in self.units.values():
            counts[unit.state] += 1
        for state, count in counts.items():
            UNITS.labels(state=state.value).set(count)

    def _log(self, unit: ManagedUnit, source: str, message: str) -> None:
        self.log_aggregator.append(unit.unit_id, source, message)
