"""Supervisor-level endpoints: liveness, fleet summary and shutdown."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fleetvisor import __version__
from fleetvisor.api.dependencies import get_coordinator, get_supervisor, require_control_token
from fleetvisor.supervisor.models import UnitState
from fleetvisor.supervisor.shutdown import ShutdownCoordinator
from fleetvisor.supervisor.supervisor import Supervisor

router = APIRouter()


@router.get("/runtime/health", response_model=Dict[str, str])
async def health_check() -> Dict[str, str]:
    """Simple health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/supervisor/status", dependencies=[Depends(require_control_token)])
async def supervisor_status(supervisor: Supervisor = Depends(get_supervisor)) -> Dict[str, Any]:
    """Fleet summary plus the supervisor's own uptime."""
    statuses = supervisor.status_all()
    counts = {state.value: 0 for state in UnitState}
    for status in statuses:
        counts[status.state] += 1

    return {
        "supervisor": "shutting_down" if supervisor.is_shutting_down else "running",
        "version": __version__,
        "started_at": supervisor.started_at.isoformat(),
        "uptime_seconds": round(supervisor.uptime, 3),
        "running": counts[UnitState.RUNNING.value],
        "total": len(statuses),
        "states": counts,
    }


class EchoRequest(BaseModel):
    enabled: bool


@router.put("/supervisor/echo", dependencies=[Depends(require_control_token)])
async def set_echo(request: EchoRequest, supervisor: Supervisor = Depends(get_supervisor)) -> Dict[str, bool]:
    """Toggle live echo of captured worker output. Retention is unaffected."""
    supervisor.log_aggregator.set_echo(request.enabled)
    return {"echo": request.enabled}


@router.post("/supervisor/shutdown", status_code=202, dependencies=[Depends(require_control_token)])
async def shutdown(coordinator: ShutdownCoordinator = Depends(get_coordinator)) -> JSONResponse:
    """Begin a fleet-wide shutdown. Repeated requests join the one in progress."""
    already = coordinator.in_progress or coordinator.done.is_set()
    coordinator.request_shutdown()
    return JSONResponse(
        status_code=202,
        content={"status": "shutting_down", "already_requested": already},
    )
