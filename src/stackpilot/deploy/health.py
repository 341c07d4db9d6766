"""Service readiness polling."""

import asyncio
import logging
import subprocess
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from stackpilot.errors import HealthCheckTimeout
from stackpilot.models.health import HealthReport, HealthStatus, ServiceHealthRecord, all_healthy
from stackpilot.models.runtime import RuntimeProfile
from stackpilot.utils.process import run_command


logger = logging.getLogger(__name__)

INSPECT_FORMAT = "{{.State.Status}}|{{if .State.Health}}{{.State.Health.Status}}{{end}}"

STARTING_STATES = ("created", "restarting")
FAILED_STATES = ("exited", "dead", "paused", "removing")


def map_container_state(state: str, health: str) -> HealthStatus:
    """Map engine container state and health-probe state to a service status."""
    state = state.strip().lower()
    health = health.strip().lower()

    if state in STARTING_STATES:
        return HealthStatus.STARTING
    if state == "running":
        if not health or health == "none" or health == "healthy":
            return HealthStatus.HEALTHY
        if health == "starting":
            return HealthStatus.RUNNING
        return HealthStatus.UNHEALTHY
    if state in FAILED_STATES:
        return HealthStatus.UNHEALTHY
    return HealthStatus.ABSENT


class ServiceInspector(ABC):
    """Resolves a service name to its current backing container status."""

    last_command: Optional[List[str]] = None

    @abstractmethod
    async def inspect(self, service: str) -> ServiceHealthRecord:
        """Current record for ``service``."""
        pass

    @abstractmethod
    async def list_services(self) -> List[str]:
        """Every service managed by the stack."""
        pass

    async def logs(self, service: str, tail: int = 50) -> str:
        return ""


class ComposeInspector(ServiceInspector):
    """Inspector backed by the resolved compose driver and engine CLI."""

    def __init__(
        self,
        runtime: RuntimeProfile,
        compose_file: str,
        project: Optional[str] = None,
        profiles: Optional[List[str]] = None,
        timeout: float = 30.0,
    ):
        self.runtime = runtime
        self.compose_file = compose_file
        self.project = project
        self.profiles = list(profiles or [])
        self.timeout = timeout

    def _compose(self, *args: str) -> List[str]:
        return self.runtime.compose_command(
            *args, compose_file=self.compose_file, project=self.project, profiles=self.profiles
        )

    async def _run(self, cmd: List[str]):
        self.last_command = cmd
        return await run_command(cmd, check=True, timeout=self.timeout, env=self.runtime.env or None)

    async def inspect(self, service: str) -> ServiceHealthRecord:
        try:
            result = await self._run(self._compose("ps", "-q", service))
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            return ServiceHealthRecord(name=service, status=HealthStatus.ABSENT, detail=_describe(e))

        ids = result.stdout.split()
        if not ids:
            return ServiceHealthRecord(name=service, status=HealthStatus.ABSENT, detail="no container")
        container_id = ids[0]

        try:
            result = await self._run(self.runtime.engine_command("inspect", "--format", INSPECT_FORMAT, container_id))
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            return ServiceHealthRecord(
                name=service, container_id=container_id, status=HealthStatus.ABSENT, detail=_describe(e)
            )

        state, _, health = result.stdout.strip().partition("|")
        status = map_container_state(state, health)
        detail = f"state={state}" + (f", health={health}" if health else "")
        return ServiceHealthRecord(name=service, container_id=container_id[:12], status=status, detail=detail)

    async def list_services(self) -> List[str]:
        result = await self._run(self._compose("config", "--services"))
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def logs(self, service: str, tail: int = 50) -> str:
        try:
            result = await self._run(self._compose("logs", "--no-color", f"--tail={tail}", service))
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            return f"<logs unavailable: {_describe(e)}>"
        return result.stdout + result.stderr


def _describe(error: BaseException) -> str:
    if isinstance(error, subprocess.CalledProcessError):
        stderr = (error.stderr or "").strip().splitlines()
        return stderr[-1] if stderr else f"exit code {error.returncode}"
    if isinstance(error, subprocess.TimeoutExpired):
        return f"timed out after {error.timeout}s"
    return str(error)


class ClusterHealthMonitor:
    """Polls required services until all are healthy or the timeout elapses."""

    def __init__(
        self,
        inspector: ServiceInspector,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.inspector = inspector
        self.clock = clock
        self.sleep = sleep
        self._last_status: Dict[str, HealthStatus] = {}

    async def poll(self, services: Iterable[str]) -> List[ServiceHealthRecord]:
        """Inspect each service once, in order."""
        records = []
        for name in services:
            record = await self.inspector.inspect(name)
            self._note_transition(record)
            records.append(record)
        return records

    async def await_healthy(self, required: List[str], timeout: float, poll_interval: float) -> HealthReport:
        """Return once every required service is healthy; raise ``HealthCheckTimeout`` otherwise."""
        if timeout <= 0 or poll_interval <= 0:
            raise ValueError("timeout and poll_interval must be positive")

        logger.info(
            f"Waiting up to {timeout:.0f}s for {len(required)} service(s) to become healthy: {', '.join(required)}"
        )
        start = self.clock()
        polls = 0

        while True:
            records = await self.poll(required)
            polls += 1
            elapsed = self.clock() - start

            if all_healthy(required, records):
                logger.info(f"All {len(required)} required service(s) healthy after {elapsed:.0f}s")
                return HealthReport(records=records, elapsed=elapsed, polls=polls)

            if elapsed >= timeout:
                snapshot = await self.snapshot(required, records)
                pending = [r.name for r in records if r.status != HealthStatus.HEALTHY]
                raise HealthCheckTimeout(timeout, snapshot, pending)

            waiting = ", ".join(f"{r.name}={r.status.value}" for r in records if r.status != HealthStatus.HEALTHY)
            logger.debug(f"Still waiting ({elapsed:.0f}s/{timeout:.0f}s): {waiting}")
            await self.sleep(min(poll_interval, timeout - elapsed))

    async def snapshot(
        self, required: List[str], known: Optional[List[ServiceHealthRecord]] = None
    ) -> List[ServiceHealthRecord]:
        """Status of every managed service, not just the required ones."""
        by_name = {r.name: r for r in known or []}
        try:
            managed = await self.inspector.list_services()
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            logger.warning(f"Could not list managed services: {_describe(e)}")
            managed = []

        names = list(required) + [name for name in managed if name not in required]
        records = []
        for name in names:
            record = by_name.get(name)
            if record is None:
                record = await self.inspector.inspect(name)
            records.append(record)
        return records

    def _note_transition(self, record: ServiceHealthRecord):
        previous = self._last_status.get(record.name)
        if previous == record.status:
            return
        self._last_status[record.name] = record.status
        if previous is None:
            logger.info(f"{record.name}: {record.status.value}")
        else:
            logger.info(f"{record.name}: {previous.value} -> {record.status.value}")
