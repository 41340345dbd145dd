"""Custom exceptions for Fleetvisor."""

from typing import Optional


class FleetvisorError(Exception):
    """Base exception for all supervisor errors."""

    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ValidationError(FleetvisorError):
    """Request rejected synchronously, no state change."""

    status_code = 409


class UnitNotFoundError(ValidationError):
    """No unit with the given id is known."""

    status_code = 404

    def __init__(self, unit_id: str):
        super().__init__(f"Unit {unit_id} not found", code="unit_not_found")
        self.unit_id = unit_id


class UnitAlreadyRunningError(ValidationError):
    """A unit with the given id is already Starting or Running."""

    def __init__(self, unit_id: str):
        super().__init__(f"Unit {unit_id} is already running", code="already_running")
        self.unit_id = unit_id


class SupervisorShuttingDownError(ValidationError):
    """New work is refused while a fleet-wide shutdown is in progress."""

    status_code = 503

    def __init__(self):
        super().__init__("Supervisor is shutting down", code="shutting_down")


class SpawnError(FleetvisorError):
    """The worker process could not be spawned."""

    status_code = 502

    def __init__(self, unit_id: str, reason: str):
        super().__init__(f"Failed to spawn unit {unit_id}: {reason}", code="spawn_failed")
        self.unit_id = unit_id


class ProtocolError(FleetvisorError):
    """A line on the worker channel is not a valid protocol message."""
    pass


class DesiredStateError(FleetvisorError):
    """The desired-state source could not be read or updated."""
    pass
