"""Deployment run sequencing."""

import asyncio
import contextlib
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field

from stackpilot.deploy.builder import StackSpecBuilder
from stackpilot.deploy.config import ConfigManager
from stackpilot.deploy.digests import DigestResolver
from stackpilot.deploy.executor import ResilientExecutor
from stackpilot.deploy.health import ClusterHealthMonitor, ComposeInspector, ServiceInspector
from stackpilot.deploy.preflight import HostPreflight, Preflight
from stackpilot.deploy.resolver import RuntimeResolver
from stackpilot.errors import (
    CommandFailed,
    DeadlineExceeded,
    HealthCheckTimeout,
    InvalidInput,
    StackpilotError,
)
from stackpilot.models.config import SizeProfile, StackpilotConfig
from stackpilot.models.health import HealthStatus, ServiceHealthRecord
from stackpilot.models.manifest import DigestResolution
from stackpilot.models.runtime import EngineId, RuntimeProfile
from stackpilot.models.stack import StackSpec


logger = logging.getLogger(__name__)

RUN_MARKER = ".stackpilot-run"
LOG_TAIL_LINES = 50

InspectorFactory = Callable[[RuntimeProfile, str, str, List[str]], ServiceInspector]


class Stage(str, Enum):
    """Stages of a deployment run, in order."""
    PREFLIGHT = "preflight"
    RESOLVE = "resolve"
    BUILD = "build"
    PULL = "pull"
    START = "start"
    HEALTH = "health"
    REPORT = "report"


class RunStatus(str, Enum):
    """Terminal status of a run."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class DeployRequest(BaseModel):
    """Per-run overrides; ``None`` falls back to the configured default."""
    size: Optional[str] = None
    pin_digests: Optional[bool] = None
    monitoring: Optional[bool] = None
    timeout: Optional[float] = Field(None, gt=0)
    wait: Optional[bool] = None
    pull: Optional[bool] = None
    engine_order: Optional[List[EngineId]] = None
    required_services: Optional[List[str]] = None


class DeploymentReport(BaseModel):
    """Outcome of one deployment run."""
    run_id: str
    status: RunStatus
    stage: Stage
    runtime: Optional[RuntimeProfile] = None
    spec_path: Optional[str] = None
    records: List[ServiceHealthRecord] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    last_command: Optional[List[str]] = None
    exit_code: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED


@dataclass
class RunContext:
    """State of the current run, passed explicitly between stages."""
    run_id: str
    working_dir: Path
    compose_file: Path
    project: str
    size: SizeProfile
    pin_digests: bool
    monitoring: bool
    pull: bool
    wait: bool
    timeout: float
    engine_order: Optional[List[EngineId]] = None
    required_services: List[str] = field(default_factory=list)
    stage: Stage = Stage.PREFLIGHT
    runtime: Optional[RuntimeProfile] = None
    spec: Optional[StackSpec] = None
    records: List[ServiceHealthRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    last_command: Optional[List[str]] = None

    @property
    def active_profiles(self) -> List[str]:
        return ["monitoring"] if self.monitoring else []

    @property
    def driver_profiles(self) -> List[str]:
        """Profiles to pass on the compose command line."""
        if self.runtime is None or not self.runtime.supports_profiles or self.spec is None:
            return []
        return sorted(self.spec.active_profiles)


@contextlib.contextmanager
def run_marker(working_dir: Path, run_id: str) -> Iterator[Path]:
    """Mark the working directory as in use for the duration of a run."""
    marker = Path(working_dir) / RUN_MARKER
    if marker.exists():
        logger.warning(
            f"Found {marker} from another run ({marker.read_text().strip()}); "
            f"concurrent runs in one directory are not coordinated"
        )
    marker.write_text(f"run_id={run_id}\npid={os.getpid()}\n")
    try:
        yield marker
    finally:
        with contextlib.suppress(FileNotFoundError):
            marker.unlink()


def _compose_inspector(runtime: RuntimeProfile, compose_file: str, project: str, profiles: List[str]):
    return ComposeInspector(runtime, compose_file, project=project, profiles=profiles)


class OrchestrationController:
    """Runs preflight, resolve, build, pull, start and health in order."""

    def __init__(
        self,
        config: StackpilotConfig,
        manager: Optional[ConfigManager] = None,
        resolver: Optional[RuntimeResolver] = None,
        executor: Optional[ResilientExecutor] = None,
        preflight: Optional[Preflight] = None,
        inspector_factory: InspectorFactory = _compose_inspector,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.working_dir = Path(config.deploy.working_dir).expanduser().resolve()
        self.manager = manager or ConfigManager(self.working_dir)
        self.resolver = resolver or RuntimeResolver(config.runtime)
        self.executor = executor or ResilientExecutor(clock=clock, sleep=sleep)
        self.preflight = preflight or HostPreflight()
        self.inspector_factory = inspector_factory
        self.clock = clock
        self.sleep = sleep

    def new_context(self, request: Optional[DeployRequest] = None) -> RunContext:
        """Overlay ``request`` onto configured defaults."""
        request = request or DeployRequest()
        deploy = self.config.deploy

        size_name = request.size or deploy.size
        if size_name not in self.config.sizes:
            raise InvalidInput(f"Unknown size '{size_name}' (known: {', '.join(sorted(self.config.sizes))})")

        def pick(value, default):
            return default if value is None else value

        return RunContext(
            run_id=uuid.uuid4().hex[:12],
            working_dir=self.working_dir,
            compose_file=self.working_dir / deploy.compose_file,
            project=deploy.project_name,
            size=self.config.sizes[size_name],
            pin_digests=pick(request.pin_digests, deploy.pin_digests),
            monitoring=pick(request.monitoring, deploy.monitoring),
            pull=pick(request.pull, deploy.pull),
            wait=pick(request.wait, deploy.wait),
            timeout=pick(request.timeout, self.config.health.timeout),
            engine_order=request.engine_order,
            required_services=list(pick(request.required_services, self.config.health.required_services)),
        )

    async def deploy(self, request: Optional[DeployRequest] = None) -> DeploymentReport:
        """Run a full deployment and report its terminal status.

        Deployment errors are turned into a failed report; cancellation and
        unexpected exceptions propagate after cleanup.
        """
        ctx = self.new_context(request)
        logger.info(f"Starting deployment run {ctx.run_id} in {ctx.working_dir}")

        try:
            ctx.stage = Stage.PREFLIGHT
            ctx.warnings = await self.preflight.check(ctx.working_dir, self.config.deploy.host_ports)

            with run_marker(ctx.working_dir, ctx.run_id):
                ctx.stage = Stage.RESOLVE
                ctx.runtime = await self.resolver.resolve(ctx.engine_order)

                ctx.stage = Stage.BUILD
                ctx.spec = await self._build(ctx)

                if ctx.pull:
                    ctx.stage = Stage.PULL
                    await self._pull(ctx)

                ctx.stage = Stage.START
                await self._start(ctx)

                if ctx.wait:
                    ctx.stage = Stage.HEALTH
                    await self._await_health(ctx)
                else:
                    logger.info("Not waiting for services to become healthy")
        except StackpilotError as e:
            return self._failure_report(ctx, e)

        ctx.stage = Stage.REPORT
        logger.info(f"Deployment run {ctx.run_id} succeeded")
        return self._report(ctx, RunStatus.SUCCEEDED)

    async def generate(self, request: Optional[DeployRequest] = None) -> Tuple[RuntimeProfile, StackSpec]:
        """Resolve the runtime and build/validate the descriptor without starting anything."""
        ctx = self.new_context(request)
        await self.preflight.check(ctx.working_dir, [])
        with run_marker(ctx.working_dir, ctx.run_id):
            ctx.runtime = await self.resolver.resolve(ctx.engine_order)
            ctx.spec = await self._build(ctx)
        return ctx.runtime, ctx.spec

    async def status(self, engine_order: Optional[List[EngineId]] = None) -> List[ServiceHealthRecord]:
        """One-shot status of every service of the deployed stack."""
        ctx = self.new_context(DeployRequest(engine_order=engine_order))
        if not ctx.compose_file.exists():
            raise InvalidInput(f"No stack descriptor at {ctx.compose_file}; deploy first")
        ctx.runtime = await self.resolver.resolve(ctx.engine_order)
        profiles = ctx.active_profiles if ctx.runtime.supports_profiles else []
        monitor = ClusterHealthMonitor(
            self.inspector_factory(ctx.runtime, str(ctx.compose_file), ctx.project, profiles),
            clock=self.clock, sleep=self.sleep,
        )
        return await monitor.snapshot([])

    async def resolve_digests(self, engine_order: Optional[List[EngineId]] = None) -> DigestResolution:
        """Pin every manifest tag to the digest the engine pulls for it."""
        path = self.manager.resolve_path(self.config.deploy.manifest_file)
        manifest = self.manager.load_manifest(path)
        runtime = await self.resolver.resolve(engine_order)
        logger.info(f"Resolving {len(manifest.components)} image digest(s) with {runtime.chosen_engine.value}")

        resolver = DigestResolver(
            runtime, self.executor, self.config.retry.pull, inspect_timeout=self.config.runtime.probe_timeout * 2
        )
        result = await resolver.resolve(manifest)
        result.manifest_path = str(path)
        if result.changed:
            self.manager.save_manifest_digests(path, {name: result.resolved[name] for name in result.changed})
        else:
            logger.info(f"No digest changes for {path}")
        if result.skipped:
            logger.warning(f"Skipped {len(result.skipped)} component(s): {', '.join(sorted(result.skipped))}")
        return result

    async def _build(self, ctx: RunContext) -> StackSpec:
        deploy = self.config.deploy
        manifest = self.manager.load_manifest(deploy.manifest_file)
        template = self.manager.load_template(deploy.template_file)
        builder = StackSpecBuilder(
            ctx.runtime,
            ctx.compose_file,
            ctx.size,
            ctx.project,
            active_profiles=ctx.active_profiles,
            validate_timeout=self.config.runtime.probe_timeout * 4,
        )
        return await builder.build(template, manifest, pin_digests=ctx.pin_digests)

    def _compose(self, ctx: RunContext, *args: str) -> List[str]:
        return ctx.runtime.compose_command(
            *args, compose_file=str(ctx.compose_file), project=ctx.project, profiles=ctx.driver_profiles
        )

    async def _pull(self, ctx: RunContext):
        """Pre-pull images; failures are tolerated for hosts with pre-loaded images."""
        try:
            await self.executor.run_command(
                self.config.retry.pull, self._compose(ctx, "pull"), description="pull images",
                env=ctx.runtime.env or None, cwd=str(ctx.working_dir),
            )
        except (CommandFailed, DeadlineExceeded) as e:
            message = f"Image pull failed, continuing with local images: {e}"
            logger.warning(message)
            ctx.warnings.append(message)

    async def _start(self, ctx: RunContext):
        logger.info(f"Bringing stack up with {ctx.runtime.driver_name}")
        await self.executor.run_command(
            self.config.retry.start, self._compose(ctx, "up", "-d", "--remove-orphans"),
            description="bring stack up", env=ctx.runtime.env or None, cwd=str(ctx.working_dir),
        )

    def required_services(self, ctx: RunContext) -> List[str]:
        """Requested services present in the descriptor, or every enabled service."""
        enabled = [
            s.name for s in ctx.spec.services
            if not s.profiles or set(s.profiles) & ctx.spec.active_profiles
        ]
        if not ctx.required_services:
            return enabled

        unknown = [name for name in ctx.required_services if name not in enabled]
        if unknown:
            logger.warning(f"Ignoring required services not in the stack: {', '.join(unknown)}")
        required = [name for name in ctx.required_services if name in enabled]
        return required or enabled

    async def _await_health(self, ctx: RunContext):
        inspector = self.inspector_factory(ctx.runtime, str(ctx.compose_file), ctx.project, ctx.driver_profiles)
        monitor = ClusterHealthMonitor(inspector, clock=self.clock, sleep=self.sleep)
        try:
            report = await monitor.await_healthy(
                self.required_services(ctx), ctx.timeout, self.config.health.poll_interval
            )
        except HealthCheckTimeout as e:
            ctx.records = e.snapshot
            ctx.last_command = inspector.last_command
            await self._log_unhealthy(inspector, e.snapshot)
            raise
        ctx.records = report.records

    async def _log_unhealthy(self, inspector: ServiceInspector, records: List[ServiceHealthRecord]):
        for record in records:
            if record.status == HealthStatus.HEALTHY:
                continue
            logs = await inspector.logs(record.name, LOG_TAIL_LINES)
            if logs.strip():
                logger.error(f"Last {LOG_TAIL_LINES} log lines of {record.name}:\n{logs.rstrip()}")

    def _report(self, ctx: RunContext, status: RunStatus, error: Optional[StackpilotError] = None) -> DeploymentReport:
        return DeploymentReport(
            run_id=ctx.run_id,
            status=status,
            stage=ctx.stage,
            runtime=ctx.runtime,
            spec_path=ctx.spec.path if ctx.spec else None,
            records=ctx.records,
            warnings=ctx.warnings,
            error=str(error) if error else None,
            last_command=ctx.last_command or self.executor.last_command,
            exit_code=error.exit_code if error else 0,
        )

    def _failure_report(self, ctx: RunContext, error: StackpilotError) -> DeploymentReport:
        status = RunStatus.TIMED_OUT if isinstance(error, (DeadlineExceeded, HealthCheckTimeout)) else RunStatus.FAILED
        logger.error(f"Deployment run {ctx.run_id} {status.value} at stage '{ctx.stage.value}': {error}")
        last_command = ctx.last_command or self.executor.last_command
        if last_command:
            logger.error(f"Last command: {' '.join(last_command)}")
        for record in ctx.records:
            logger.error(f"  {record.name:<24} {record.status.value:<10} {record.detail}")
        return self._report(ctx, status, error)
