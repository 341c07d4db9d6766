"""Tests for service health polling."""

import subprocess
from unittest.mock import AsyncMock, patch

import pytest

from stackpilot.deploy.health import ClusterHealthMonitor, ComposeInspector, ServiceInspector, map_container_state
from stackpilot.errors import HealthCheckTimeout
from stackpilot.models.health import HealthStatus, ServiceHealthRecord
from stackpilot.utils.process import CommandResult

from conftest import make_runtime


class ScriptedInspector(ServiceInspector):
    """Service status as a function of fake time."""

    def __init__(self, clock, timeline, managed=None):
        self.clock = clock
        self.timeline = timeline
        self.managed = managed or list(timeline)
        self.inspected = []

    async def inspect(self, service):
        self.inspected.append((self.clock(), service))
        status = self.timeline.get(service, lambda t: HealthStatus.ABSENT)(self.clock())
        return ServiceHealthRecord(name=service, status=status)

    async def list_services(self):
        return list(self.managed)


def healthy_after(seconds, before=HealthStatus.STARTING):
    return lambda t: HealthStatus.HEALTHY if t >= seconds else before


@pytest.mark.asyncio
class TestClusterHealthMonitor:
    """Test the readiness wait loop."""

    async def test_returns_as_soon_as_all_healthy(self, clock):
        inspector = ScriptedInspector(clock, {"app": healthy_after(10), "cache": healthy_after(20)})
        monitor = ClusterHealthMonitor(inspector, clock=clock, sleep=clock.sleep)

        report = await monitor.await_healthy(["app", "cache"], timeout=60, poll_interval=10)

        assert clock.now == 20
        assert report.polls == 3
        assert report.elapsed == 20
        assert all(r.status == HealthStatus.HEALTHY for r in report.records)

    async def test_timeout_with_snapshot(self, clock):
        """app healthy at t=10, cache stuck starting: fails at t=60 with cache starting."""
        inspector = ScriptedInspector(
            clock,
            {"app": healthy_after(10), "cache": lambda t: HealthStatus.STARTING},
            managed=["app", "cache", "dashboard"],
        )
        monitor = ClusterHealthMonitor(inspector, clock=clock, sleep=clock.sleep)

        with pytest.raises(HealthCheckTimeout) as exc_info:
            await monitor.await_healthy(["app", "cache"], timeout=60, poll_interval=10)

        error = exc_info.value
        assert clock.now == 60
        assert error.pending == ["cache"]
        snapshot = {r.name: r.status for r in error.snapshot}
        assert snapshot == {
            "app": HealthStatus.HEALTHY,
            "cache": HealthStatus.STARTING,
            "dashboard": HealthStatus.ABSENT,
        }
        assert "cache: starting" in str(error)
        assert error.exit_code == 6

    async def test_last_sleep_clamped_to_timeout(self, clock):
        inspector = ScriptedInspector(clock, {"app": lambda t: HealthStatus.UNHEALTHY})
        monitor = ClusterHealthMonitor(inspector, clock=clock, sleep=clock.sleep)

        with pytest.raises(HealthCheckTimeout):
            await monitor.await_healthy(["app"], timeout=25, poll_interval=10)

        assert clock.sleeps == [10, 10, 5]
        assert clock.now == 25

    async def test_absent_service_not_healthy(self, clock):
        inspector = ScriptedInspector(clock, {"app": healthy_after(0)})
        monitor = ClusterHealthMonitor(inspector, clock=clock, sleep=clock.sleep)

        with pytest.raises(HealthCheckTimeout) as exc_info:
            await monitor.await_healthy(["app", "worker"], timeout=10, poll_interval=5)

        assert exc_info.value.pending == ["worker"]

    async def test_transitions_logged_once(self, clock, caplog):
        inspector = ScriptedInspector(clock, {"app": healthy_after(20)})
        monitor = ClusterHealthMonitor(inspector, clock=clock, sleep=clock.sleep)

        with caplog.at_level("INFO", logger="stackpilot.deploy.health"):
            await monitor.await_healthy(["app"], timeout=60, poll_interval=10)

        transitions = [r.getMessage() for r in caplog.records if r.getMessage().startswith("app:")]
        assert transitions == ["app: starting", "app: starting -> healthy"]

    async def test_rejects_non_positive_timeout(self, clock):
        monitor = ClusterHealthMonitor(ScriptedInspector(clock, {}), clock=clock, sleep=clock.sleep)

        with pytest.raises(ValueError):
            await monitor.await_healthy(["app"], timeout=0, poll_interval=1)


class TestStateMapping:
    """Container state to service status."""

    @pytest.mark.parametrize("state,health,expected", [
        ("running", "", HealthStatus.HEALTHY),
        ("running", "healthy", HealthStatus.HEALTHY),
        ("running", "starting", HealthStatus.RUNNING),
        ("running", "unhealthy", HealthStatus.UNHEALTHY),
        ("created", "", HealthStatus.STARTING),
        ("restarting", "", HealthStatus.STARTING),
        ("exited", "", HealthStatus.UNHEALTHY),
        ("dead", "", HealthStatus.UNHEALTHY),
        ("paused", "", HealthStatus.UNHEALTHY),
        ("", "", HealthStatus.ABSENT),
    ])
    def test_mapping(self, state, health, expected):
        assert map_container_state(state, health) == expected


@pytest.mark.asyncio
class TestComposeInspector:
    """Test the compose-backed inspector."""

    async def test_inspect_running_with_probe(self):
        inspector = ComposeInspector(make_runtime(), "/srv/docker-compose.yml", project="shop")

        with patch("stackpilot.deploy.health.run_command", new_callable=AsyncMock) as mock_run:
            mock_run.side_effect = [
                CommandResult(returncode=0, stdout="0123456789abcdef\n"),
                CommandResult(returncode=0, stdout="running|starting\n"),
            ]
            record = await inspector.inspect("app1")

        assert record.status == HealthStatus.RUNNING
        assert record.container_id == "0123456789ab"
        ps_cmd = mock_run.call_args_list[0][0][0]
        assert ps_cmd == ["docker", "compose", "-p", "shop", "-f", "/srv/docker-compose.yml", "ps", "-q", "app1"]
        inspect_cmd = mock_run.call_args_list[1][0][0]
        assert inspect_cmd[:3] == ["docker", "inspect", "--format"]
        assert inspect_cmd[-1] == "0123456789abcdef"
        assert inspector.last_command == inspect_cmd

    async def test_no_container_is_absent(self):
        inspector = ComposeInspector(make_runtime(), "docker-compose.yml")

        with patch("stackpilot.deploy.health.run_command", new_callable=AsyncMock) as mock_run:
            mock_run.return_value = CommandResult(returncode=0, stdout="")
            record = await inspector.inspect("cache")

        assert record.status == HealthStatus.ABSENT
        assert mock_run.await_count == 1

    async def test_inspect_error_is_absent_with_detail(self):
        inspector = ComposeInspector(make_runtime(), "docker-compose.yml")
        error = subprocess.CalledProcessError(1, ["docker"], output="", stderr="Error: No such object: abc\n")

        with patch("stackpilot.deploy.health.run_command", new_callable=AsyncMock) as mock_run:
            mock_run.side_effect = [CommandResult(returncode=0, stdout="abc\n"), error]
            record = await inspector.inspect("cache")

        assert record.status == HealthStatus.ABSENT
        assert record.detail == "Error: No such object: abc"

    async def test_profiles_and_env_passed(self):
        runtime = make_runtime(invocation=["docker-compose"], env={"DOCKER_HOST": "unix:///x.sock"})
        inspector = ComposeInspector(runtime, "dc.yml", profiles=["monitoring"])

        with patch("stackpilot.deploy.health.run_command", new_callable=AsyncMock) as mock_run:
            mock_run.return_value = CommandResult(returncode=0, stdout="app1\ncache\n\n")
            services = await inspector.list_services()

        assert services == ["app1", "cache"]
        assert mock_run.call_args[0][0] == [
            "docker-compose", "-f", "dc.yml", "--profile", "monitoring", "config", "--services",
        ]
        assert mock_run.call_args[1]["env"] == {"DOCKER_HOST": "unix:///x.sock"}

    async def test_logs_tail(self):
        inspector = ComposeInspector(make_runtime(), "dc.yml")

        with patch("stackpilot.deploy.health.run_command", new_callable=AsyncMock) as mock_run:
            mock_run.return_value = CommandResult(returncode=0, stdout="redis ready\n")
            logs = await inspector.logs("cache", tail=50)

        assert logs == "redis ready\n"
        assert mock_run.call_args[0][0][-3:] == ["--no-color", "--tail=50", "cache"]
