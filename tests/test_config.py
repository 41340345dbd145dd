"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from fleetvisor.core.config import Settings


class TestSettings:
    """Settings defaults and environment overrides."""

    def test_defaults(self):
        settings = Settings()

        assert settings.port == 8000
        assert settings.log_capacity == 100
        assert settings.stop_grace_period == 10.0
        assert settings.health_timeout == 5.0
        assert settings.reconcile_interval == 300.0
        assert settings.credentials == []
        assert settings.desired_state_file is None
        assert settings.worker_module == "fleetvisor.worker"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("FLEETVISOR_PORT", "9100")
        monkeypatch.setenv("FLEETVISOR_ECHO_LOGS", "true")
        monkeypatch.setenv("FLEETVISOR_RECONCILE_INTERVAL", "0")
        monkeypatch.setenv("FLEETVISOR_CREDENTIALS", "cred-a, cred-b,,cred-c")

        settings = Settings()

        assert settings.port == 9100
        assert settings.echo_logs is True
        assert settings.reconcile_interval == 0
        assert settings.credentials == ["cred-a", "cred-b", "cred-c"]

    def test_log_format_normalized(self):
        assert Settings(log_format="CONSOLE").log_format == "console"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"log_format": "xml"},
            {"log_capacity": 0},
            {"stop_grace_period": -1},
            {"health_timeout": 0},
            {"reconcile_interval": -5},
            {"port": 70000},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            Settings(**overrides)
