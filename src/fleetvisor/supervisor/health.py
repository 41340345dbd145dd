"""Correlation-id based liveness probing."""

import asyncio
import uuid
from typing import Optional

import structlog

from fleetvisor.core.models import HealthResult
from fleetvisor.metrics import HEALTH_CHECKS
from fleetvisor.supervisor.models import ManagedUnit, PendingHealthCheck
from fleetvisor.supervisor.protocol import HealthCheckRequest, HealthCheckResponse

logger = structlog.get_logger()


class HealthMonitor:
    """Issues health probes and matches replies by correlation id.

    Only the most recently issued probe of a unit is honored. Results never
    touch the unit's lifecycle state.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def check(self, unit: ManagedUnit) -> HealthResult:
        """Probe ``unit`` and wait for the reply or the timeout."""
        handle = unit.handle
        if handle is None or not unit.is_running:
            HEALTH_CHECKS.labels(outcome="not_running").inc()
            return HealthResult(unit_id=unit.unit_id, healthy=False, detail=f"unit is {unit.state.value}")

        loop = asyncio.get_running_loop()
        correlation_id = uuid.uuid4().hex

        self._supersede(unit)

        future = loop.create_future()
        timer = loop.call_later(self.timeout, self._expire, unit, correlation_id)
        unit.pending_health = PendingHealthCheck(
            correlation_id=correlation_id,
            future=future,
            timer=timer,
            sent_at=loop.time(),
        )

        try:
            await handle.send(HealthCheckRequest(correlation_id=correlation_id))
        except Exception as e:
            logger.warning("Health check send failed", unit_id=unit.unit_id, error=str(e))
            self._settle(unit, correlation_id, healthy=False, detail=f"send failed: {e}")

        return await future

    def resolve(self, unit: ManagedUnit, response: HealthCheckResponse) -> bool:
        """Match a reply against the pending probe. Stale replies are dropped."""
        pending = unit.pending_health
        if pending is None or pending.correlation_id != response.correlation_id:
            logger.debug(
                "Discarding stale health response",
                unit_id=unit.unit_id,
                correlation_id=response.correlation_id,
            )
            return False

        return self._settle(unit, response.correlation_id, healthy=response.healthy, detail=response.detail)

    def cancel(self, unit: ManagedUnit, detail: str) -> None:
        """Fail any pending probe, e.g. because the process went away."""
        pending = unit.pending_health
        if pending is not None:
            self._settle(unit, pending.correlation_id, healthy=False, detail=detail)

    def _supersede(self, unit: ManagedUnit) -> None:
        pending = unit.pending_health
        if pending is not None:
            logger.debug("Superseding health check", unit_id=unit.unit_id, correlation_id=pending.correlation_id)
            self._settle(unit, pending.correlation_id, healthy=False, detail="superseded")

    def _expire(self, unit: ManagedUnit, correlation_id: str) -> None:
        if self._settle(unit, correlation_id, healthy=False, detail="timeout"):
            logger.warning("Health check timed out", unit_id=unit.unit_id, timeout=self.timeout)

    def _settle(self, unit: ManagedUnit, correlation_id: str, healthy: bool, detail: Optional[str]) -> bool:
        pending = unit.pending_health
        if pending is None or pending.correlation_id != correlation_id:
            return False

        unit.pending_health = None
        pending.timer.cancel()

        latency_ms = (asyncio.get_running_loop().time() - pending.sent_at) * 1000
        if not pending.future.done():
            pending.future.set_result(
                HealthResult(
                    unit_id=unit.unit_id,
                    healthy=healthy,
                    detail=detail,
                    correlation_id=correlation_id,
                    latency_ms=round(latency_ms, 3),
                )
            )

        outcome = "healthy" if healthy else (detail if detail in ("timeout", "superseded") else "unhealthy")
        HEALTH_CHECKS.labels(outcome=outcome).inc()
        return True
