"""Tests for process resource statistics."""

import os

import psutil
import pytest

from fleetvisor.supervisor import resources, supervisor as supervisor_module
from fleetvisor.supervisor.resources import get_process_stats


class TestGetProcessStats:
    """psutil-backed statistics."""

    def test_current_process(self):
        stats = get_process_stats(os.getpid())

        assert stats["pid"] == os.getpid()
        assert stats["memory"]["rss_bytes"] > 0
        assert stats["memory"]["vms_bytes"] >= stats["memory"]["rss_bytes"]
        assert set(stats["cpu"]) == {"percent", "user_time", "system_time"}
        assert stats["num_threads"] >= 1

    def test_missing_process(self, monkeypatch):
        def gone(pid):
            raise psutil.NoSuchProcess(pid)

        monkeypatch.setattr(resources.psutil, "Process", gone)

        assert get_process_stats(424242) == {"error": "Process not found"}

    def test_access_denied(self, monkeypatch):
        def denied(pid):
            raise psutil.AccessDenied(pid)

        monkeypatch.setattr(resources.psutil, "Process", denied)

        assert "error" in get_process_stats(1)


@pytest.mark.asyncio
class TestStatusResources:
    """Resource usage in status snapshots."""

    async def test_attached_only_on_request(self, supervisor, monkeypatch):
        calls = []

        def fake_stats(pid):
            calls.append(pid)
            return {"pid": pid, "num_threads": 4}

        monkeypatch.setattr(supervisor_module, "get_process_stats", fake_stats)
        await supervisor.start("u1", "cred")
        pid = supervisor.status("u1").pid

        assert supervisor.status("u1").resources is None
        assert calls == []

        assert supervisor.status("u1", with_resources=True).resources == {"pid": pid, "num_threads": 4}
        assert calls == [pid]

    async def test_stats_error_leaves_resources_empty(self, supervisor, monkeypatch):
        monkeypatch.setattr(supervisor_module, "get_process_stats", lambda pid: {"error": "Process not found"})
        await supervisor.start("u1", "cred")

        status = supervisor.status("u1", with_resources=True)

        assert status.state == "running"
        assert status.resources is None

    async def test_stopped_unit_is_not_inspected(self, supervisor, monkeypatch):
        def fail(pid):
            raise AssertionError("stopped units have no process to inspect")

        monkeypatch.setattr(supervisor_module, "get_process_stats", fail)
        await supervisor.start("u1", "cred")
        await supervisor.stop("u1")
        assert await supervisor.wait_stopped("u1", timeout=1.0)

        assert supervisor.status("u1", with_resources=True).resources is None
