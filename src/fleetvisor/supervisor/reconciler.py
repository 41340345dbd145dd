"""Periodic reconciliation of desired units against the supervisor's registry."""

import asyncio
from typing import Optional

import structlog

from fleetvisor.core.exceptions import (
    SupervisorShuttingDownError,
    UnitAlreadyRunningError,
    UnitNotFoundError,
)
from fleetvisor.core.models import ReconcileResult
from fleetvisor.metrics import RECONCILE_OPERATIONS
from fleetvisor.supervisor.desired_state import DesiredStateEntry, DesiredStateSource
from fleetvisor.supervisor.supervisor import Supervisor

logger = structlog.get_logger()


class Reconciler:
    """Converges the registry towards a desired-state source.

    Each tick starts units that are desired but unknown and tears down
    units that are known but no longer desired. It only ever calls the
    same ``Supervisor`` operations an operator would.
    """

    def __init__(self, supervisor: Supervisor, source: DesiredStateSource, interval: float = 300.0):
        self.supervisor = supervisor
        self.source = source
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the periodic loop. An interval of 0 disables it."""
        if self.interval <= 0:
            logger.info("Reconciliation disabled")
            return
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Let an in-flight tick finish, then stop the loop."""
        async with self._tick_lock:
            pass
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _loop(self) -> None:
        logger.info("Reconciliation loop started", interval=self.interval)

        while not self.supervisor.is_shutting_down:
            try:
                await asyncio.sleep(self.interval)
                await self.reconcile()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Reconciliation failed")

        logger.info("Reconciliation loop stopped")

    async def reconcile(self) -> ReconcileResult:
        """Run one tick. Per-id failures are recorded, never raised."""
        result = ReconcileResult()

        async with self._tick_lock:
            if self.supervisor.is_shutting_down:
                logger.debug("Skipping reconciliation during shutdown")
                return result

            try:
                entries = await asyncio.to_thread(self.source.load)
            except Exception as e:
                logger.error("Failed to load desired state", error=str(e))
                result.errors["*"] = str(e)
                return result

            desired = {entry.identity: entry for entry in entries}
            known = set(self.supervisor.unit_ids())

            to_add = sorted(set(desired) - known)
            to_remove = sorted(known - set(desired))
            if not to_add and not to_remove:
                return result

            logger.info("Reconciling", to_add=len(to_add), to_remove=len(to_remove))

            await asyncio.gather(*(self._remove(unit_id, result) for unit_id in to_remove))
            await asyncio.gather(*(self._add(desired[unit_id], result) for unit_id in to_add))

        result.added.sort()
        result.removed.sort()
        result.skipped.sort()
        return result

    async def _remove(self, unit_id: str, result: ReconcileResult) -> None:
        logger.info("Reconciliation: removing unit", unit_id=unit_id)
        try:
            await self.supervisor.remove(unit_id)
        except UnitNotFoundError:
            result.skipped.append(unit_id)
            return
        except Exception as e:
            logger.exception("Reconciliation: failed to remove unit", unit_id=unit_id)
            result.errors[unit_id] = str(e)
            return
        RECONCILE_OPERATIONS.labels(operation="remove").inc()
        result.removed.append(unit_id)

    async def _add(self, entry: DesiredStateEntry, result: ReconcileResult) -> None:
        if self.supervisor.is_active(entry.identity):
            result.skipped.append(entry.identity)
            return

        logger.info("Reconciliation: starting unit", unit_id=entry.identity)
        try:
            await self.supervisor.start(entry.identity, entry.credential)
        except (UnitAlreadyRunningError, SupervisorShuttingDownError):
            result.skipped.append(entry.identity)
            return
        except Exception as e:
            logger.error("Reconciliation: failed to start unit", unit_id=entry.identity, error=str(e))
            result.errors[entry.identity] = str(e)
            return
        RECONCILE_OPERATIONS.labels(operation="start").inc()
        result.added.append(entry.identity)
