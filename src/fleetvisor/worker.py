"""Reference worker speaking the supervisor protocol over stdin/stdout.

Launched by the supervisor as ``python -m fleetvisor.worker``. Its identity
and credential arrive through the environment. It announces itself, answers
health checks and exits 0 on a shutdown command or when stdin closes.
"""

import asyncio
import os
import sys
import time
from typing import Optional

import click

from fleetvisor.core.exceptions import ProtocolError
from fleetvisor.supervisor.process_handle import ENV_UNIT_CREDENTIAL, ENV_UNIT_ID
from fleetvisor.supervisor.protocol import (
    ErrorReport,
    HealthCheckRequest,
    HealthCheckResponse,
    IPCMessage,
    LogLine,
    ReadyNotice,
    ShutdownCommand,
    StatusUpdate,
    UnitInfo,
    decode,
    encode,
)


def emit(message: IPCMessage) -> None:
    sys.stdout.write(encode(message) + "\n")
    sys.stdout.flush()


class Worker:
    """Minimal protocol peer."""

    def __init__(self, unit_id: str, status_interval: float = 0.0):
        self.unit_id = unit_id
        self.status_interval = status_interval
        self.started = time.monotonic()
        self.health_checks = 0

    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

        emit(UnitInfo(display_name=f"worker {self.unit_id}"))
        emit(LogLine(text=f"Worker {self.unit_id} started with pid {os.getpid()}"))
        emit(ReadyNotice())

        heartbeat: Optional[asyncio.Task] = None
        if self.status_interval > 0:
            heartbeat = asyncio.create_task(self._heartbeat())

        try:
            async for raw in reader:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                if not self.handle(line):
                    emit(LogLine(text="Shutdown requested, exiting"))
                    break
        finally:
            if heartbeat is not None:
                heartbeat.cancel()

        return 0

    def handle(self, line: str) -> bool:
        """Process one inbound line. Returns False when the worker should exit."""
        try:
            message = decode(line)
        except ProtocolError as e:
            emit(ErrorReport(message=f"Invalid message from supervisor: {e}"))
            return True

        if isinstance(message, HealthCheckRequest):
            self.health_checks += 1
            emit(HealthCheckResponse(correlation_id=message.correlation_id, healthy=True, detail="ok"))
        elif isinstance(message, ShutdownCommand):
            return False
        return True

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.status_interval)
            emit(StatusUpdate(fields={
                "uptime_seconds": round(time.monotonic() - self.started, 1),
                "health_checks": self.health_checks,
            }))


@click.command()
@click.option("--status-interval", type=float, default=60.0, help="Seconds between status updates, 0 disables")
def main(status_interval):
    """Run a reference worker."""
    unit_id = os.environ.get(ENV_UNIT_ID)
    credential = os.environ.get(ENV_UNIT_CREDENTIAL)
    if not unit_id or not credential:
        emit(ErrorReport(message=f"{ENV_UNIT_ID} and {ENV_UNIT_CREDENTIAL} must be set"))
        sys.exit(2)

    sys.exit(asyncio.run(Worker(unit_id, status_interval).run()))


if __name__ == "__main__":
    main()
