"""Process supervision: registry, process handles, health, reconciliation and shutdown."""

from .models import ManagedUnit, UnitState, mask_credential
from .reconciler import Reconciler
from .shutdown import ShutdownCoordinator
from .supervisor import Supervisor

__all__ = [
    "ManagedUnit",
    "UnitState",
    "mask_credential",
    "Reconciler",
    "ShutdownCoordinator",
    "Supervisor",
]
