"""Tests for the line-oriented message protocol."""

import json

import pytest

from fleetvisor.core.exceptions import ProtocolError
from fleetvisor.supervisor.protocol import (
    HealthCheckRequest,
    HealthCheckResponse,
    LogLine,
    ShutdownCommand,
    StatusUpdate,
    decode,
    encode,
)


class TestEncode:
    """Serialization."""

    def test_single_line_with_kind(self):
        line = encode(HealthCheckRequest(correlation_id="abc"))

        assert "\n" not in line
        assert json.loads(line) == {"kind": "health_check", "correlation_id": "abc"}

    def test_shutdown(self):
        assert json.loads(encode(ShutdownCommand())) == {"kind": "shutdown"}


class TestDecode:
    """Parsing of inbound lines."""

    def test_health_response(self):
        message = decode('{"kind": "health_response", "correlation_id": "c1", "healthy": false, "detail": "db down"}')

        assert isinstance(message, HealthCheckResponse)
        assert message.correlation_id == "c1"
        assert message.healthy is False
        assert message.detail == "db down"

    def test_defaults_applied(self):
        message = decode('{"kind": "log", "text": "hi"}')

        assert isinstance(message, LogLine)
        assert message.stream == "stdout"

    def test_status_fields(self):
        message = decode(encode(StatusUpdate(fields={"chats": 2, "mode": "poll"})))

        assert message.fields == {"chats": 2, "mode": "poll"}

    def test_unknown_kind_is_ignored(self):
        assert decode('{"kind": "telemetry", "value": 1}') is None

    @pytest.mark.parametrize(
        "line",
        [
            "plain text output",
            "{not json",
            '{"no_kind": true}',
            '{"kind": ["log"]}',
            '["kind", "log"]',
        ],
    )
    def test_not_a_message(self, line):
        with pytest.raises(ProtocolError):
            decode(line)

    def test_invalid_fields(self):
        with pytest.raises(ProtocolError):
            decode('{"kind": "health_response"}')
