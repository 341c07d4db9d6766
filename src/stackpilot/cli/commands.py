"""Command implementations for CLI."""

import asyncio
from typing import Any, Awaitable, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from stackpilot.deploy.controller import DeployRequest, DeploymentReport, OrchestrationController
from stackpilot.models.manifest import DigestResolution
from stackpilot.models.health import HealthStatus, ServiceHealthRecord
from stackpilot.models.runtime import EngineId, RuntimeProfile


console = Console()

STATUS_STYLES = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.RUNNING: "cyan",
    HealthStatus.STARTING: "yellow",
    HealthStatus.UNHEALTHY: "red",
    HealthStatus.ABSENT: "dim",
}


def _run_action(description: str, action: Awaitable[Any], quiet: bool = False) -> Any:
    """Run a coroutine to completion behind a progress spinner."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        disable=quiet,
    ) as progress:
        task = progress.add_task(description, total=None)

        result = asyncio.run(action)

        progress.update(task, completed=True)

    return result


def _health_table(records: List[ServiceHealthRecord], title: str = "Services") -> Table:
    table = Table(title=title)
    table.add_column("Service", style="cyan")
    table.add_column("Status")
    table.add_column("Container", style="dim")
    table.add_column("Detail", style="dim", max_width=60)

    for record in records:
        style = STATUS_STYLES.get(record.status, "white")
        table.add_row(
            record.name,
            f"[{style}]{record.status.value}[/{style}]",
            record.container_id or "-",
            record.detail,
        )
    return table


def print_runtime(runtime: RuntimeProfile):
    """Display a resolved runtime profile."""
    table = Table(title="Container Runtime")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    present = ", ".join(
        f"{engine.value}={'yes' if found else 'no'}" for engine, found in runtime.engine_present.items()
    )
    table.add_row("Engine", runtime.chosen_engine.value)
    table.add_row("Engines present", present)
    table.add_row("Compose driver", runtime.driver_name)
    table.add_row("Driver kind", runtime.compose_driver_kind.value)
    table.add_row("Driver version", runtime.version or "unknown")
    table.add_row("Invocation", " ".join(runtime.invocation))
    table.add_row("Profiles", "yes" if runtime.supports_profiles else "no")
    table.add_row("Health checks", "yes" if runtime.supports_healthchecks else "no")
    table.add_row("Fallback installable", "yes" if runtime.installable else "no")
    if runtime.env:
        table.add_row("Environment", " ".join(f"{k}={v}" for k, v in runtime.env.items()))
    console.print(table)


def detect_runtime(controller: OrchestrationController, engine_order: Optional[List[EngineId]] = None):
    """Resolve and display the container runtime."""
    runtime = _run_action("Detecting container runtime...", controller.resolver.resolve(engine_order))
    print_runtime(runtime)


def generate_stack(controller: OrchestrationController, request: DeployRequest):
    """Render and validate the stack descriptor without deploying it."""
    runtime, spec = _run_action("Generating stack descriptor...", controller.generate(request))

    console.print(f"[green]✓[/green] Stack descriptor written to {spec.path}")
    console.print(f"  Engine: {runtime.chosen_engine.value} ({runtime.driver_name})")
    console.print(f"  Digest pinning: {'enabled' if spec.metadata.digest_pinning else 'disabled'}")

    table = Table(title="Services")
    table.add_column("Service", style="cyan")
    table.add_column("Image", style="magenta")
    table.add_column("Profiles", style="dim")
    table.add_column("Health check")
    for service in spec.services:
        table.add_row(
            service.name,
            service.image,
            ", ".join(service.profiles) or "-",
            "yes" if service.has_healthcheck else "[yellow]none[/yellow]",
        )
    console.print(table)


def deploy_stack(controller: OrchestrationController, request: DeployRequest) -> DeploymentReport:
    """Run a deployment and display its report."""
    report = asyncio.run(controller.deploy(request))

    if report.records:
        console.print(_health_table(report.records))
    for warning in report.warnings:
        console.print(f"[yellow]![/yellow] {warning}")

    if report.succeeded:
        console.print(f"[green]✓[/green] Deployment {report.run_id} succeeded")
        if report.spec_path:
            console.print(f"  Stack descriptor: {report.spec_path}")
    else:
        console.print(
            f"[red]✗[/red] Deployment {report.run_id} {report.status.value} at stage '{report.stage.value}'"
        )
        console.print(report.error or "", markup=False)
        if report.last_command:
            console.print(f"  Last command: {' '.join(report.last_command)}", markup=False)
    return report


def show_status(controller: OrchestrationController, engine_order: Optional[List[EngineId]] = None):
    """Display a one-shot health table of the deployed stack."""
    records = _run_action("Inspecting services...", controller.status(engine_order))
    if not records:
        console.print("No services found")
        return

    console.print(_health_table(records))
    healthy = sum(1 for r in records if r.status == HealthStatus.HEALTHY)
    console.print(f"[bold]Services[/bold]: {healthy}/{len(records)} healthy")


def resolve_digests(controller: OrchestrationController, engine_order: Optional[List[EngineId]] = None) -> DigestResolution:
    """Pin manifest tags to digests and display what changed."""
    result = _run_action("Resolving image digests...", controller.resolve_digests(engine_order))

    table = Table(title="Image Digests")
    table.add_column("Component", style="cyan")
    table.add_column("Digest", style="magenta")
    table.add_column("Result")
    for name, digest in result.resolved.items():
        outcome = "[green]updated[/green]" if name in result.changed else "unchanged"
        table.add_row(name, f"sha256:{digest[:12]}", outcome)
    for name, reason in result.skipped.items():
        table.add_row(name, "-", f"[red]skipped[/red]: {escape(reason)}")
    console.print(table)

    if result.changed:
        console.print(f"[green]✓[/green] {len(result.changed)} digest(s) written to {result.manifest_path}")
    else:
        console.print("No digest changes")
    return result
