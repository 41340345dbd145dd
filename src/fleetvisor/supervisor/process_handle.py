"""Process handle: the only OS-coupled seam of the supervisor."""

import asyncio
import os
import signal as _signal
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from fleetvisor.core.exceptions import ProtocolError
from fleetvisor.supervisor.protocol import IPCMessage, LogLine, decode, encode

logger = structlog.get_logger()

ENV_PREFIX = "FLEETVISOR_"
ENV_UNIT_ID = "FLEETVISOR_UNIT_ID"
ENV_UNIT_CREDENTIAL = "FLEETVISOR_UNIT_CREDENTIAL"

# Time allowed for pipe readers to drain after the process has exited
READER_DRAIN_TIMEOUT = 2.0

# Longest stdout/stderr line delivered whole; longer lines are cut
DEFAULT_LINE_LIMIT = 1024 * 1024
TRUNCATED_MARKER = " ...[truncated]"

ExitCallback = Callable[[Optional[int]], None]
MessageCallback = Callable[[IPCMessage], None]


class SignalKind(Enum):
    """Signals the supervisor may deliver to a worker."""
    TERMINATE = "terminate"
    KILL = "kill"


@dataclass
class SpawnSpec:
    """What a handle needs to launch one worker."""

    unit_id: str
    env: Dict[str, str] = field(default_factory=dict, repr=False)


class ProcessHandle(ABC):
    """Narrow interface over one OS process.

    Callbacks registered with ``on_exit`` fire exactly once, after every
    message the worker emitted before exiting has been dispatched.
    """

    def __init__(self, spec: SpawnSpec):
        self.spec = spec
        self._exit_callbacks: List[ExitCallback] = []
        self._message_callbacks: List[MessageCallback] = []
        self._exit_notified = False

    @property
    def pid(self) -> Optional[int]:
        return None

    @abstractmethod
    async def spawn(self) -> None:
        """Launch the process. Raises on failure."""

    @abstractmethod
    def signal(self, kind: SignalKind) -> None:
        """Deliver a signal. A process that already exited is ignored."""

    @abstractmethod
    def is_alive(self) -> bool:
        """Whether the OS process is still running."""

    @abstractmethod
    async def send(self, message: IPCMessage) -> None:
        """Deliver a protocol message to the worker."""

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_callbacks.append(callback)

    def on_message(self, callback: MessageCallback) -> None:
        self._message_callbacks.append(callback)

    def _dispatch(self, message: IPCMessage) -> None:
        for callback in list(self._message_callbacks):
            try:
                callback(message)
            except Exception:
                logger.exception("Message callback failed", unit_id=self.spec.unit_id, kind=message.kind)

    def _notify_exit(self, returncode: Optional[int]) -> None:
        if self._exit_notified:
            return
        self._exit_notified = True
        for callback in list(self._exit_callbacks):
            try:
                callback(returncode)
            except Exception:
                logger.exception("Exit callback failed", unit_id=self.spec.unit_id)


HandleFactory = Callable[[SpawnSpec], ProcessHandle]


def build_child_env(spec: SpawnSpec, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Environment for a worker: inherited env minus supervisor settings, plus the unit's own values."""
    env = dict(os.environ if base is None else base)
    for key in list(env.keys()):
        if key.upper().startswith(ENV_PREFIX):
            del env[key]
    env.update(spec.env)
    return env


class SubprocessHandle(ProcessHandle):
    """Process handle backed by ``asyncio.create_subprocess_exec``.

    Protocol messages travel as JSON lines over stdin/stdout. stdout lines
    that are not protocol messages, and all stderr lines, surface as
    ``LogLine`` messages. A line longer than ``line_limit`` bytes is cut to
    its first ``line_limit`` bytes and delivered as a ``LogLine``; the rest
    of it is discarded and reading carries on with the next line.
    """

    def __init__(self, spec: SpawnSpec, command: Sequence[str], line_limit: int = DEFAULT_LINE_LIMIT):
        super().__init__(spec)
        self.command = list(command)
        self.line_limit = line_limit
        self.process: Optional[asyncio.subprocess.Process] = None
        self._readers: List[asyncio.Task] = []
        self._waiter: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    async def spawn(self) -> None:
        if self.process is not None:
            raise RuntimeError(f"Process for {self.spec.unit_id} already spawned")

        logger.debug("Spawning worker", unit_id=self.spec.unit_id, command=" ".join(self.command))

        # The credential travels only through the environment, never argv
        self.process = await asyncio.create_subprocess_exec(
            *self.command,
            env=build_child_env(self.spec),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            limit=self.line_limit,
        )

        self._readers = [
            asyncio.create_task(self._read_stdout(self.process.stdout)),
            asyncio.create_task(self._read_stderr(self.process.stderr)),
        ]
        self._waiter = asyncio.create_task(self._wait_for_exit())

        logger.info("Worker spawned", unit_id=self.spec.unit_id, pid=self.process.pid)

    def signal(self, kind: SignalKind) -> None:
        if not self.process or self.process.returncode is not None:
            return
        try:
            if kind == SignalKind.KILL:
                self.process.kill()
            else:
                self.process.send_signal(_signal.SIGTERM)
        except ProcessLookupError:
            pass

    def is_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def send(self, message: IPCMessage) -> None:
        if not self.process or not self.process.stdin or self.process.stdin.is_closing():
            raise ConnectionError(f"Channel to {self.spec.unit_id} is closed")

        async with self._send_lock:
            self.process.stdin.write((encode(message) + "\n").encode("utf-8"))
            await self.process.stdin.drain()

    async def _read_lines(self, stream: asyncio.StreamReader) -> AsyncIterator[Tuple[str, bool]]:
        """Yield ``(line, truncated)`` pairs until EOF."""
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                if e.partial:
                    yield e.partial.decode("utf-8", errors="replace").rstrip("\r\n"), False
                return
            except asyncio.LimitOverrunError as e:
                head = await stream.read(max(1, e.consumed))
                await self._discard_line(stream)
                logger.warning(
                    "Worker output line exceeds limit, truncated",
                    unit_id=self.spec.unit_id,
                    line_limit=self.line_limit,
                )
                text = head[: self.line_limit].decode("utf-8", errors="replace").rstrip("\r\n")
                yield text + TRUNCATED_MARKER, True
                continue
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n"), False

    @staticmethod
    async def _discard_line(stream: asyncio.StreamReader) -> None:
        """Consume the remainder of an oversized line, newline included."""
        while True:
            try:
                await stream.readuntil(b"\n")
                return
            except asyncio.IncompleteReadError:
                return
            except asyncio.LimitOverrunError as e:
                await stream.read(max(1, e.consumed))

    async def _read_stdout(self, stream: asyncio.StreamReader) -> None:
        async for line, truncated in self._read_lines(stream):
            if not line.strip():
                continue
            if truncated:
                self._dispatch(LogLine(text=line, stream="stdout"))
                continue
            try:
                message = decode(line)
            except ProtocolError:
                self._dispatch(LogLine(text=line, stream="stdout"))
                continue
            if message is None:
                logger.debug("Ignoring unknown message kind", unit_id=self.spec.unit_id)
                continue
            self._dispatch(message)

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        async for line, _ in self._read_lines(stream):
            if line.strip():
                self._dispatch(LogLine(text=line, stream="stderr"))

    async def _wait_for_exit(self) -> None:
        returncode = await self.process.wait()

        # Deliver anything still buffered in the pipes before reporting exit
        done, pending = await asyncio.wait(self._readers, timeout=READER_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
        for task in done:
            if not task.cancelled() and task.exception():
                logger.error(
                    "Error reading worker output",
                    unit_id=self.spec.unit_id,
                    error=str(task.exception()),
                )

        if self.process.stdin and not self.process.stdin.is_closing():
            self.process.stdin.close()

        logger.info("Worker exited", unit_id=self.spec.unit_id, pid=self.process.pid, returncode=returncode)
        self._notify_exit(returncode)


def subprocess_factory(
    worker_module: str,
    python: Optional[str] = None,
    line_limit: int = DEFAULT_LINE_LIMIT,
) -> HandleFactory:
    """Factory launching ``python -m <worker_module>`` for every unit."""
    command = [python or sys.executable, "-m", worker_module]

    def factory(spec: SpawnSpec) -> ProcessHandle:
        return SubprocessHandle(spec, command, line_limit=line_limit)

    return factory
