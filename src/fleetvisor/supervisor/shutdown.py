"""Fleet-wide graceful shutdown."""

import asyncio
from typing import List, Optional

import structlog

from fleetvisor.core.exceptions import UnitNotFoundError
from fleetvisor.core.models import ShutdownReport
from fleetvisor.supervisor.models import TERMINAL_STATES
from fleetvisor.supervisor.reconciler import Reconciler
from fleetvisor.supervisor.supervisor import Supervisor

logger = structlog.get_logger()


class ShutdownCoordinator:
    """Stops every unit once, no matter how many shutdown requests arrive.

    The sequence is: refuse new starts, suspend reconciliation, ask every
    unit to stop concurrently, wait up to ``timeout`` for all of them, then
    kill whatever is left.
    """

    def __init__(self, supervisor: Supervisor, reconciler: Optional[Reconciler] = None, timeout: float = 30.0):
        self.supervisor = supervisor
        self.reconciler = reconciler
        self.timeout = timeout
        self.done = asyncio.Event()
        self.report: Optional[ShutdownReport] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def in_progress(self) -> bool:
        return self._task is not None and not self._task.done()

    def request_shutdown(self) -> asyncio.Task:
        """Start the shutdown sequence if it is not already under way."""
        if self._task is None:
            logger.info("Shutdown requested")
            self._task = asyncio.create_task(self._run())
        else:
            logger.debug("Shutdown already in progress")
        return self._task

    async def shutdown(self) -> ShutdownReport:
        """Request shutdown and wait for it. Repeated calls share one run."""
        return await asyncio.shield(self.request_shutdown())

    async def _run(self) -> ShutdownReport:
        loop = asyncio.get_running_loop()
        started = loop.time()

        self.supervisor.begin_shutdown()
        if self.reconciler is not None:
            await self.reconciler.stop()

        targets = self._live_units()
        logger.info("Stopping all units", count=len(targets), timeout=self.timeout)

        outcomes = await asyncio.gather(
            *(self.supervisor.stop(unit_id) for unit_id in targets),
            return_exceptions=True,
        )
        for unit_id, outcome in zip(targets, outcomes):
            if isinstance(outcome, Exception) and not isinstance(outcome, UnitNotFoundError):
                logger.warning("Stop failed during shutdown", unit_id=unit_id, error=str(outcome))

        remaining = max(0.0, self.timeout - (loop.time() - started))
        stopped = await asyncio.gather(
            *(self.supervisor.wait_stopped(unit_id, timeout=remaining) for unit_id in targets)
        )

        forced = []
        for unit_id, ok in zip(targets, stopped):
            if ok:
                continue
            logger.warning("Unit still running after shutdown timeout, killing", unit_id=unit_id)
            try:
                self.supervisor.kill(unit_id, f"Forced termination: shutdown timeout of {self.timeout}s exceeded")
            except UnitNotFoundError:
                continue
            forced.append(unit_id)

        self.report = ShutdownReport(
            stopped=sorted(set(targets) - set(forced)),
            forced=sorted(forced),
            duration_seconds=round(loop.time() - started, 3),
        )
        logger.info(
            "Shutdown complete",
            stopped=len(self.report.stopped),
            forced=len(self.report.forced),
            duration=self.report.duration_seconds,
        )
        self.done.set()
        return self.report

    def _live_units(self) -> List[str]:
        return [
            unit_id
            for unit_id in self.supervisor.unit_ids()
            if self.supervisor.units[unit_id].state not in TERMINAL_STATES
        ]
