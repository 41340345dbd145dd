"""Tests for the control API."""

import time

import pytest
from fastapi.testclient import TestClient

from fleetvisor.core.config import Settings
from fleetvisor.main import create_app
from fleetvisor.supervisor.desired_state import derive_identity


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def app(fake_factory):
    settings = Settings(
        reconcile_interval=0,
        log_format="console",
        log_level="WARNING",
        stop_grace_period=0.2,
        health_timeout=0.1,
        shutdown_timeout=1.0,
    )
    return create_app(settings, handle_factory=fake_factory)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def unit_state(client, unit_id):
    return client.get(f"/units/{unit_id}").json()["state"]


class TestControlAPI:
    """Unit lifecycle over HTTP."""

    def test_runtime_health(self, client):
        response = client.get("/runtime/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_start_stop(self, client):
        response = client.post("/units/u1/start", json={"credential": "secret-a"})

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "running"
        assert "secret-a" not in response.text

        response = client.post("/units/u1/stop")
        assert response.status_code == 200
        assert wait_for(lambda: unit_state(client, "u1") == "stopped")

    def test_duplicate_start_conflicts(self, client):
        client.post("/units/u1/start", json={"credential": "cred"})

        response = client.post("/units/u1/start", json={"credential": "cred"})

        assert response.status_code == 409
        assert response.json()["code"] == "already_running"

    def test_unknown_unit_is_404(self, client):
        response = client.get("/units/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "UnitNotFoundError"

    def test_spawn_failure_is_502(self, client, fake_factory):
        fake_factory.per_unit["bad"] = {"fail_spawn": True}

        response = client.post("/units/bad/start", json={"credential": "cred"})

        assert response.status_code == 502
        assert response.json()["code"] == "spawn_failed"
        assert unit_state(client, "bad") == "errored"

    def test_start_requires_credential(self, client):
        response = client.post("/units/u1/start", json={})

        assert response.status_code == 422

    def test_restart_and_remove(self, client, fake_factory):
        client.post("/units/u1/start", json={"credential": "cred"})

        response = client.post("/units/u1/restart")
        assert response.status_code == 200
        assert response.json()["state"] == "running"
        assert len(fake_factory.handles_for("u1")) == 2

        response = client.delete("/units/u1")
        assert response.status_code == 200
        assert client.get("/units/u1").status_code == 404

    def test_logs(self, client):
        client.post("/units/u1/start", json={"credential": "cred"})

        response = client.get("/units/u1/logs", params={"count": 5})

        assert response.status_code == 200
        lines = response.json()["lines"]
        assert any("Started with PID" in line for line in lines)

        assert client.delete("/units/u1/logs").status_code == 200
        assert client.get("/units/u1/logs").json()["lines"] == []

    def test_health(self, client, fake_factory):
        fake_factory.per_unit["u2"] = {"auto_health": False}
        client.post("/units/u1/start", json={"credential": "cred-1"})
        client.post("/units/u2/start", json={"credential": "cred-2"})

        response = client.get("/units/u1/health")
        assert response.status_code == 200
        assert response.json()["healthy"] is True

        results = client.get("/health/units").json()
        assert results["u1"]["healthy"] is True
        assert results["u2"]["detail"] == "timeout"

    def test_batch_operations(self, client):
        client.post("/units/u1/start", json={"credential": "cred-1"})
        client.post("/units/u2/start", json={"credential": "cred-2"})

        response = client.post("/units/stop-all")
        assert response.status_code == 200
        assert response.json()["succeeded"] == ["u1", "u2"]
        assert wait_for(lambda: unit_state(client, "u2") == "stopped")

        response = client.post("/units/start-all")
        assert response.json()["succeeded"] == ["u1", "u2"]

        response = client.post("/units/restart-all")
        assert response.json()["failed"] == {}

    def test_supervisor_status(self, client):
        client.post("/units/u1/start", json={"credential": "cred"})

        data = client.get("/supervisor/status").json()

        assert data["supervisor"] == "running"
        assert data["running"] == 1
        assert data["total"] == 1
        assert data["uptime_seconds"] >= 0

    def test_echo_toggle(self, client, app):
        response = client.put("/supervisor/echo", json={"enabled": True})

        assert response.status_code == 200
        assert app.state.supervisor.log_aggregator.echo is True

        client.put("/supervisor/echo", json={"enabled": False})
        assert app.state.supervisor.log_aggregator.echo is False

    def test_metrics(self, client):
        client.post("/units/u1/start", json={"credential": "cred"})

        response = client.get("/metrics/")

        assert response.status_code == 200
        assert "fleetvisor_unit_transitions_total" in response.text


class TestDesiredStateAPI:
    """Desired state and reconciliation over HTTP."""

    def test_add_and_remove_desired(self, client):
        identity = derive_identity("cred-x")

        response = client.post("/desired", json={"credential": "cred-x"})
        assert response.status_code == 201
        data = response.json()
        assert data["identity"] == identity
        assert data["reconcile"]["added"] == [identity]
        assert unit_state(client, identity) == "running"

        listing = client.get("/desired").json()
        assert listing == [{"identity": identity, "masked_credential": "c***********"}]
        assert "cred-x" not in client.get("/desired").text

        response = client.delete(f"/desired/{identity}")
        assert response.json()["removed"] is True
        assert response.json()["reconcile"]["removed"] == [identity]
        assert client.get(f"/units/{identity}").status_code == 404

    def test_reconcile_endpoint(self, client):
        response = client.post("/reconcile")

        assert response.status_code == 200
        assert response.json()["added"] == []


class TestShutdownAPI:
    """Shutdown over HTTP."""

    def test_shutdown(self, client, app):
        client.post("/units/u1/start", json={"credential": "cred"})

        response = client.post("/supervisor/shutdown")
        assert response.status_code == 202
        assert response.json()["already_requested"] is False

        coordinator = app.state.coordinator
        assert wait_for(coordinator.done.is_set)
        assert coordinator.report.stopped == ["u1"]

        response = client.post("/supervisor/shutdown")
        assert response.json()["already_requested"] is True

        response = client.post("/units/u2/start", json={"credential": "cred"})
        assert response.status_code == 503
        assert response.json()["code"] == "shutting_down"


class TestDesiredStateValidation:
    """Rejected desired-state input."""

    def test_blank_credential_is_rejected(self, client):
        response = client.post("/desired", json={"credential": "   "})

        assert response.status_code == 422
        assert client.get("/desired").json() == []

    def test_blank_start_credential_is_rejected(self, client):
        response = client.post("/units/u1/start", json={"credential": " \t "})

        assert response.status_code == 422
        assert client.get("/units/u1").status_code == 404

    def test_yaml_backed_desired_state(self, fake_factory, tmp_path):
        path = tmp_path / "desired.yaml"
        settings = Settings(
            reconcile_interval=0,
            log_format="console",
            log_level="WARNING",
            desired_state_file=str(path),
            shutdown_timeout=1.0,
        )
        app = create_app(settings, handle_factory=fake_factory)

        with TestClient(app) as client:
            response = client.post("/desired", json={"credential": "  cred-y  "})
            assert response.status_code == 201
            identity = response.json()["identity"]
            assert identity == derive_identity("cred-y")
            assert "cred-y" in path.read_text()

            assert [e["identity"] for e in client.get("/desired").json()] == [identity]

            assert client.delete(f"/desired/{identity}").json()["removed"] is True
            assert client.get("/desired").json() == []


TOKEN = "control-token-for-tests"


@pytest.fixture
def secured_client(fake_factory):
    settings = Settings(
        reconcile_interval=0,
        log_format="console",
        log_level="WARNING",
        shutdown_timeout=1.0,
        control_token=TOKEN,
    )
    with TestClient(create_app(settings, handle_factory=fake_factory)) as client:
        yield client


class TestControlToken:
    """Bearer token on the control API."""

    def test_missing_token_is_401(self, secured_client, fake_factory):
        response = secured_client.post("/units/u1/start", json={"credential": "cred"})

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert fake_factory.handles == []

    def test_wrong_scheme_is_401(self, secured_client):
        response = secured_client.get("/units", headers={"Authorization": f"Basic {TOKEN}"})

        assert response.status_code == 401

    def test_wrong_token_is_403(self, secured_client):
        response = secured_client.post(
            "/desired",
            json={"credential": "cred"},
            headers={"Authorization": "Bearer not-the-token"},
        )

        assert response.status_code == 403
        assert response.json()["message"] == "Invalid control token"

    def test_correct_token_is_accepted(self, secured_client):
        headers = {"Authorization": f"Bearer {TOKEN}"}

        response = secured_client.post("/units/u1/start", json={"credential": "cred"}, headers=headers)
        assert response.status_code == 200

        assert secured_client.get("/units/u1/logs", headers=headers).status_code == 200
        assert secured_client.get("/desired", headers=headers).status_code == 200
        assert secured_client.get("/supervisor/status", headers=headers).json()["running"] == 1

    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/units"),
            ("get", "/units/u1/logs"),
            ("delete", "/units/u1"),
            ("post", "/units/stop-all"),
            ("get", "/desired"),
            ("delete", "/desired/unit-abc"),
            ("post", "/reconcile"),
            ("get", "/supervisor/status"),
            ("post", "/supervisor/shutdown"),
        ],
    )
    def test_control_routes_require_token(self, secured_client, method, path):
        response = getattr(secured_client, method)(path)

        assert response.status_code == 401

    def test_liveness_and_metrics_stay_open(self, secured_client):
        assert secured_client.get("/runtime/health").status_code == 200
        assert secured_client.get("/metrics/").status_code == 200

    def test_echo_requires_token(self, secured_client):
        response = secured_client.put("/supervisor/echo", json={"enabled": True})

        assert response.status_code == 401
