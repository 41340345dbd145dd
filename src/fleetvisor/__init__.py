"""Fleetvisor - supervisor for a fleet of independently running worker processes."""

__version__ = "0.1.0"
__author__ = "Fleetvisor Core Team"

from fleetvisor.core.config import Settings
from fleetvisor.supervisor.supervisor import Supervisor

__all__ = ["Settings", "Supervisor", "__version__"]
