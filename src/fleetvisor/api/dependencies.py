"""Accessors for the components stored on the application state."""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from fleetvisor.supervisor.desired_state import DesiredStateSource
from fleetvisor.supervisor.reconciler import Reconciler
from fleetvisor.supervisor.shutdown import ShutdownCoordinator
from fleetvisor.supervisor.supervisor import Supervisor


def get_supervisor(request: Request) -> Supervisor:
    return request.app.state.supervisor


def get_desired_state(request: Request) -> DesiredStateSource:
    return request.app.state.desired_state


def get_reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler


def get_coordinator(request: Request) -> ShutdownCoordinator:
    return request.app.state.coordinator


def require_control_token(
    request: Request,
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    """Check ``Authorization: Bearer <control_token>`` on control routes."""
    expected = request.app.state.settings.control_token
    if not expected:
        return  # not configured, control API is open
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Missing or invalid Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = authorization.split(" ", 1)[1]
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Invalid control token")
