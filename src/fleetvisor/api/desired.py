"""Desired-state and reconciliation endpoints."""

import asyncio
from typing import Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from fleetvisor.api.dependencies import get_desired_state, get_reconciler, require_control_token
from fleetvisor.core.models import ReconcileResult
from fleetvisor.supervisor.desired_state import DesiredStateSource
from fleetvisor.supervisor.models import mask_credential
from fleetvisor.supervisor.reconciler import Reconciler

router = APIRouter(dependencies=[Depends(require_control_token)])


class AddDesiredRequest(BaseModel):
    """Request to add a unit to the desired state."""
    model_config = ConfigDict(str_strip_whitespace=True)

    credential: str = Field(..., min_length=1)


class DesiredEntryResponse(BaseModel):
    identity: str
    masked_credential: str


@router.get("/desired", response_model=List[DesiredEntryResponse])
async def list_desired(source: DesiredStateSource = Depends(get_desired_state)) -> List[DesiredEntryResponse]:
    entries = await asyncio.to_thread(source.load)
    return [
        DesiredEntryResponse(identity=entry.identity, masked_credential=mask_credential(entry.credential))
        for entry in entries
    ]


@router.post("/desired", status_code=201)
async def add_desired(
    request: AddDesiredRequest,
    source: DesiredStateSource = Depends(get_desired_state),
    reconciler: Reconciler = Depends(get_reconciler),
) -> Dict:
    """Add a credential and converge immediately."""
    entry = await asyncio.to_thread(source.add, request.credential)
    result = await reconciler.reconcile()
    return {"identity": entry.identity, "reconcile": result.model_dump()}


@router.delete("/desired/{identity}")
async def remove_desired(
    identity: str,
    source: DesiredStateSource = Depends(get_desired_state),
    reconciler: Reconciler = Depends(get_reconciler),
) -> Dict:
    """Drop an identity and converge immediately."""
    removed = await asyncio.to_thread(source.remove, identity)
    result = await reconciler.reconcile()
    return {"identity": identity, "removed": removed, "reconcile": result.model_dump()}


@router.post("/reconcile", response_model=ReconcileResult)
async def reconcile(reconciler: Reconciler = Depends(get_reconciler)) -> ReconcileResult:
    """Run one reconciliation tick now."""
    return await reconciler.reconcile()
