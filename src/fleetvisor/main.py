"""Main entry point for Fleetvisor."""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import click
import structlog
import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from fleetvisor import __version__
from fleetvisor.api.control import router as control_router
from fleetvisor.api.desired import router as desired_router
from fleetvisor.api.middleware import (
    setup_error_handling,
    setup_logging_middleware,
    setup_metrics_middleware,
)
from fleetvisor.api.units import router as units_router
from fleetvisor.core.config import Settings
from fleetvisor.supervisor.desired_state import source_from_settings
from fleetvisor.supervisor.process_handle import HandleFactory
from fleetvisor.supervisor.reconciler import Reconciler
from fleetvisor.supervisor.shutdown import ShutdownCoordinator
from fleetvisor.supervisor.supervisor import Supervisor
from fleetvisor.utils.logging import bind_supervisor_context, setup_logging

logger = structlog.get_logger()


async def _exit_after_shutdown(app: FastAPI) -> None:
    """Stop the HTTP server once a shutdown requested over the API completes."""
    await app.state.coordinator.done.wait()
    server = getattr(app.state, "server", None)
    if server is not None:
        server.should_exit = True


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = app.state.settings
    bind_supervisor_context(f"{settings.host}:{settings.port}")
    logger.info("Starting Fleetvisor", version=__version__)
    if not settings.control_token:
        logger.warning("Control API has no token configured, every route is open")

    reconciler = app.state.reconciler
    result = await reconciler.reconcile()
    logger.info(
        "Initial reconciliation finished",
        added=len(result.added),
        errors=len(result.errors),
    )
    await reconciler.start()

    watcher = asyncio.create_task(_exit_after_shutdown(app))

    yield

    watcher.cancel()
    logger.info("Shutting down Fleetvisor")
    report = await app.state.coordinator.shutdown()
    logger.info("Fleetvisor stopped", stopped=len(report.stopped), forced=len(report.forced))


def create_app(settings: Optional[Settings] = None, handle_factory: Optional[HandleFactory] = None) -> FastAPI:
    """Create FastAPI application."""
    if settings is None:
        settings = Settings()

    setup_logging(settings.log_level, settings.log_format)

    supervisor = Supervisor.from_settings(settings, handle_factory)
    desired_state = source_from_settings(settings)
    reconciler = Reconciler(supervisor, desired_state, interval=settings.reconcile_interval)

    app = FastAPI(
        title="Fleetvisor",
        version=__version__,
        description="Supervisor for a fleet of worker processes",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.supervisor = supervisor
    app.state.desired_state = desired_state
    app.state.reconciler = reconciler
    app.state.coordinator = ShutdownCoordinator(supervisor, reconciler, timeout=settings.shutdown_timeout)
    app.state.server = None

    setup_error_handling(app)
    setup_logging_middleware(app)
    setup_metrics_middleware(app)

    app.include_router(control_router, tags=["supervisor"])
    app.include_router(units_router, tags=["units"])
    app.include_router(desired_router, tags=["desired-state"])

    if settings.metrics_enabled:
        app.mount("/metrics", make_asgi_app())

    return app


@click.command()
@click.option("--host", default=None, help="Control API host")
@click.option("--port", type=int, default=None, help="Control API port")
@click.option("--desired-state-file", type=click.Path(dir_okay=False), default=None, help="YAML file listing desired units")
@click.option("--log-level", default=None, help="Log level")
@click.option("--log-format", type=click.Choice(["json", "console"]), default=None, help="Log renderer")
def run(host, port, desired_state_file, log_level, log_format):
    """Run the supervisor and its control API."""
    overrides = {
        "host": host,
        "port": port,
        "desired_state_file": desired_state_file,
        "log_level": log_level,
        "log_format": log_format,
    }
    settings = Settings(**{k: v for k, v in overrides.items() if v is not None})

    app = create_app(settings)

    # uvicorn turns SIGINT/SIGTERM into a lifespan shutdown, which runs the coordinator
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,  # We handle logging ourselves
        access_log=False,  # Handled by middleware
    )
    server = uvicorn.Server(config)
    app.state.server = server
    server.run()


if __name__ == "__main__":
    run()
