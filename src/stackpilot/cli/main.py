"""Main CLI implementation using Typer."""

from pathlib import Path
from typing import Any, Callable, List, Optional

import typer
from rich.console import Console
from rich.markup import escape

from stackpilot.cli.commands import deploy_stack, detect_runtime, generate_stack, resolve_digests, show_status
from stackpilot.deploy.config import ConfigManager
from stackpilot.deploy.controller import DeployRequest, OrchestrationController
from stackpilot.errors import CommandFailed, StackpilotError
from stackpilot.models.runtime import EngineId
from stackpilot.utils.logging import setup_logging


# Create Typer app
app = typer.Typer(
    name="stackpilot",
    help="Stackpilot - container stack deployment with runtime detection and health gating",
    add_completion=False,
)

# Console for rich output
console = Console()


def _run_cli_command(
    handler: Callable[..., Any],
    config_dir: Optional[Path],
    verbose: bool = False,
    **kwargs: Any,
) -> Any:
    """Helper to run a CLI command with a controller and error handling."""
    try:
        manager = ConfigManager(config_dir)
        config = manager.load()
        setup_logging("DEBUG" if verbose else config.logging.level, config.logging.file)
        controller = OrchestrationController(config, manager=manager)
        return handler(controller, **kwargs)
    except StackpilotError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(e.exit_code) from e


ConfigOption = typer.Option(
    None, "--config", "-c", help="Directory containing stackpilot.yaml and versions.yaml"
)
EngineOption = typer.Option(
    None, "--engine", "-e", help="Engine candidate, in order of preference (repeatable)"
)
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


@app.command("deploy")
def deploy_command(
    size: Optional[str] = typer.Option(None, "--size", help="Cluster size profile (e.g. small, medium, large)"),
    skip_digests: bool = typer.Option(False, "--skip-digests", help="Use mutable tags instead of digests"),
    monitoring: Optional[bool] = typer.Option(
        None, "--monitoring/--no-monitoring", help="Enable the monitoring profile"
    ),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Health wait timeout in seconds"),
    wait: Optional[bool] = typer.Option(None, "--wait/--no-wait", help="Wait for services to become healthy"),
    no_pull: bool = typer.Option(False, "--no-pull", help="Do not pre-pull images"),
    engine: Optional[List[EngineId]] = EngineOption,
    required: Optional[List[str]] = typer.Option(
        None, "--require", "-r", help="Service that must become healthy (repeatable)"
    ),
    config_dir: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Detect the runtime, generate the stack, start it and wait for health."""
    if timeout is not None and timeout <= 0:
        console.print("[red]Error:[/red] --timeout must be positive")
        raise typer.Exit(2)

    request = DeployRequest(
        size=size,
        pin_digests=False if skip_digests else None,
        monitoring=monitoring,
        timeout=timeout,
        wait=wait,
        pull=False if no_pull else None,
        engine_order=engine or None,
        required_services=required or None,
    )
    report = _run_cli_command(deploy_stack, config_dir, verbose, request=request)
    if report.exit_code:
        raise typer.Exit(report.exit_code)


@app.command("generate")
def generate_command(
    size: Optional[str] = typer.Option(None, "--size", help="Cluster size profile"),
    skip_digests: bool = typer.Option(False, "--skip-digests", help="Use mutable tags instead of digests"),
    monitoring: Optional[bool] = typer.Option(
        None, "--monitoring/--no-monitoring", help="Enable the monitoring profile"
    ),
    engine: Optional[List[EngineId]] = EngineOption,
    config_dir: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Generate and validate the stack descriptor without starting it."""
    request = DeployRequest(
        size=size,
        pin_digests=False if skip_digests else None,
        monitoring=monitoring,
        engine_order=engine or None,
    )
    _run_cli_command(generate_stack, config_dir, verbose, request=request)


@app.command("detect")
def detect_command(
    engine: Optional[List[EngineId]] = EngineOption,
    config_dir: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Show the container engine and compose driver that would be used."""
    _run_cli_command(detect_runtime, config_dir, verbose, engine_order=engine or None)


@app.command("resolve-digests")
def resolve_digests_command(
    engine: Optional[List[EngineId]] = EngineOption,
    config_dir: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Pull each manifest image and pin its tag to the content digest."""
    result = _run_cli_command(resolve_digests, config_dir, verbose, engine_order=engine or None)
    if result.skipped and not result.resolved:
        raise typer.Exit(CommandFailed.exit_code)


@app.command("status")
def status_command(
    engine: Optional[List[EngineId]] = EngineOption,
    config_dir: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Show the health of every service of the deployed stack."""
    _run_cli_command(show_status, config_dir, verbose, engine_order=engine or None)


def main():
    """Main entry point for CLI."""
    app()
