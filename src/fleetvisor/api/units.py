"""Unit lifecycle endpoints."""

from typing import Dict, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from fleetvisor.api.dependencies import get_supervisor, require_control_token
from fleetvisor.core.models import BatchResult, HealthResult, UnitStatus
from fleetvisor.supervisor.supervisor import Supervisor

router = APIRouter(dependencies=[Depends(require_control_token)])


class StartUnitRequest(BaseModel):
    """Request to start a unit."""
    model_config = ConfigDict(str_strip_whitespace=True)

    credential: str = Field(..., min_length=1)


class LogsResponse(BaseModel):
    unit_id: str
    lines: List[str]


def _batch_payload(batch: BatchResult) -> Dict:
    return {
        "operation": batch.operation,
        "succeeded": batch.succeeded,
        "failed": batch.failed,
    }


@router.get("/units", response_model=List[UnitStatus])
async def list_units(
    resources: bool = Query(False, description="Include process resource usage"),
    supervisor: Supervisor = Depends(get_supervisor),
) -> List[UnitStatus]:
    return supervisor.status_all(with_resources=resources)


@router.post("/units/start-all")
async def start_all(supervisor: Supervisor = Depends(get_supervisor)) -> Dict:
    return _batch_payload(await supervisor.start_all())


@router.post("/units/stop-all")
async def stop_all(supervisor: Supervisor = Depends(get_supervisor)) -> Dict:
    return _batch_payload(await supervisor.stop_all())


@router.post("/units/restart-all")
async def restart_all(supervisor: Supervisor = Depends(get_supervisor)) -> Dict:
    return _batch_payload(await supervisor.restart_all())


@router.get("/units/{unit_id}", response_model=UnitStatus)
async def get_unit(
    unit_id: str,
    resources: bool = Query(False, description="Include process resource usage"),
    supervisor: Supervisor = Depends(get_supervisor),
) -> UnitStatus:
    return supervisor.status(unit_id, with_resources=resources)


@router.post("/units/{unit_id}/start", response_model=UnitStatus)
async def start_unit(
    unit_id: str,
    request: StartUnitRequest,
    supervisor: Supervisor = Depends(get_supervisor),
) -> UnitStatus:
    return await supervisor.start(unit_id, request.credential)


@router.post("/units/{unit_id}/stop", response_model=UnitStatus)
async def stop_unit(unit_id: str, supervisor: Supervisor = Depends(get_supervisor)) -> UnitStatus:
    return await supervisor.stop(unit_id)


@router.post("/units/{unit_id}/restart", response_model=UnitStatus)
async def restart_unit(unit_id: str, supervisor: Supervisor = Depends(get_supervisor)) -> UnitStatus:
    return await supervisor.restart(unit_id)


@router.delete("/units/{unit_id}")
async def remove_unit(unit_id: str, supervisor: Supervisor = Depends(get_supervisor)) -> Dict[str, str]:
    await supervisor.remove(unit_id)
    return {"status": "removed", "unit_id": unit_id}


@router.get("/units/{unit_id}/logs", response_model=LogsResponse)
async def get_logs(
    unit_id: str,
    count: int = Query(50, ge=1, le=10000),
    supervisor: Supervisor = Depends(get_supervisor),
) -> LogsResponse:
    return LogsResponse(unit_id=unit_id, lines=supervisor.get_logs(unit_id, count))


@router.get("/units/{unit_id}/health", response_model=HealthResult)
async def unit_health(unit_id: str, supervisor: Supervisor = Depends(get_supervisor)) -> HealthResult:
    return await supervisor.health_check(unit_id)


@router.get("/health/units", response_model=Dict[str, HealthResult])
async def all_units_health(supervisor: Supervisor = Depends(get_supervisor)) -> Dict[str, HealthResult]:
    return await supervisor.health_check_all()


@router.delete("/units/{unit_id}/logs")
async def clear_logs(unit_id: str, supervisor: Supervisor = Depends(get_supervisor)) -> Dict[str, str]:
    supervisor.clear_logs(unit_id)
    return {"status": "cleared", "unit_id": unit_id}
