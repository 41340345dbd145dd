"""Typed messages exchanged between the supervisor and a worker process.

Each message is one JSON object per line, tagged by its ``kind`` field.
Objects carrying a ``kind`` this version does not know are ignored so
newer workers can talk to older supervisors.
"""

import json
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from fleetvisor.core.exceptions import ProtocolError


class HealthCheckRequest(BaseModel):
    """Supervisor asks the worker to report liveness."""

    kind: Literal["health_check"] = "health_check"
    correlation_id: str


class HealthCheckResponse(BaseModel):
    """Worker reply to a ``HealthCheckRequest``."""

    kind: Literal["health_response"] = "health_response"
    correlation_id: str
    healthy: bool = True
    detail: Optional[str] = None


class ShutdownCommand(BaseModel):
    """Supervisor asks the worker to exit gracefully."""

    kind: Literal["shutdown"] = "shutdown"


class LogLine(BaseModel):
    """A log line the worker wants captured."""

    kind: Literal["log"] = "log"
    text: str
    stream: str = "stdout"


class ErrorReport(BaseModel):
    """Worker-side error, recorded as the unit's last error."""

    kind: Literal["error"] = "error"
    message: str


class StatusUpdate(BaseModel):
    """Free-form status fields, for display only."""

    kind: Literal["status"] = "status"
    fields: Dict[str, Any] = Field(default_factory=dict)


class UnitInfo(BaseModel):
    """Descriptive information about the worker."""

    kind: Literal["unit_info"] = "unit_info"
    display_name: str


class ReadyNotice(BaseModel):
    """Worker finished its own initialization."""

    kind: Literal["ready"] = "ready"


IPCMessage = Union[
    HealthCheckRequest,
    HealthCheckResponse,
    ShutdownCommand,
    LogLine,
    ErrorReport,
    StatusUpdate,
    UnitInfo,
    ReadyNotice,
]

MESSAGE_TYPES = {
    cls.model_fields["kind"].default: cls
    for cls in (
        HealthCheckRequest,
        HealthCheckResponse,
        ShutdownCommand,
        LogLine,
        ErrorReport,
        StatusUpdate,
        UnitInfo,
        ReadyNotice,
    )
}


def encode(message: IPCMessage) -> str:
    """Serialize a message to a single JSON line (without newline)."""
    return message.model_dump_json()


def decode(line: str) -> Optional[IPCMessage]:
    """Parse one line from the channel.

    Returns ``None`` for a well-formed object with an unknown ``kind``.

    Raises:
        ProtocolError: If the line is not a JSON object with a ``kind``,
            or a known kind carries invalid fields.
    """
    line = line.strip()
    if not line.startswith("{"):
        raise ProtocolError("Not a protocol message")

    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("kind"), str):
        raise ProtocolError("Missing message kind")

    message_cls = MESSAGE_TYPES.get(data["kind"])
    if message_cls is None:
        return None

    try:
        return message_cls.model_validate(data)
    except PydanticValidationError as e:
        raise ProtocolError(f"Invalid {data['kind']} message: {e}") from e
