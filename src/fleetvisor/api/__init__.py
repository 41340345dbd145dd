"""API endpoints for Fleetvisor."""
