"""Error taxonomy for deployment runs."""

from typing import List, Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from stackpilot.models.health import ServiceHealthRecord
    from stackpilot.models.runtime import ProbeAttempt


class StackpilotError(Exception):
    """Base class for all deployment errors."""
    exit_code = 1


class InvalidInput(StackpilotError, ValueError):
    """Malformed configuration, manifest, template or CLI input."""
    exit_code = 2


class RuntimeDetectionFailure(StackpilotError):
    """No functional engine or compose driver was found."""
    exit_code = 3

    REMEDIATION = [
        "Install Docker (https://docs.docker.com/engine/install/) or Podman and make sure the daemon/service answers '<engine> info'",
        "Install the compose plugin: 'docker-compose-plugin' (Docker) or 'podman-plugins' / 'podman-compose' (Podman)",
        "For Podman with docker-compose, enable the API socket: 'systemctl --user enable --now podman.socket'",
        "Allow the pinned docker-compose fallback install (runtime.allow_install / STACKPILOT_ALLOW_INSTALL=1)",
    ]

    def __init__(self, message: str, attempts: Optional[Sequence["ProbeAttempt"]] = None):
        self.attempts: List["ProbeAttempt"] = list(attempts or [])
        super().__init__(message)

    def __str__(self) -> str:
        lines = [self.args[0]]
        if self.attempts:
            lines.append("Probes attempted:")
            for attempt in self.attempts:
                mark = "ok" if attempt.ok else "failed"
                lines.append(f"  - {attempt.name}: {mark} ({attempt.detail})")
        lines.append("Remediation:")
        lines.extend(f"  * {hint}" for hint in self.REMEDIATION)
        return "\n".join(lines)


class ComposeValidationFailure(StackpilotError):
    """Stack descriptor failed schema or reference-hygiene validation."""
    exit_code = 4

    def __init__(self, message: str, offending: Optional[str] = None, output: str = ""):
        self.offending = offending
        self.output = output
        super().__init__(message)

    def __str__(self) -> str:
        text = self.args[0]
        if self.offending:
            text = f"{text} [offending: {self.offending}]"
        if self.output:
            text = f"{text}\n{self.output.strip()}"
        return text


class CommandFailed(StackpilotError):
    """An external command exited non-zero (after any retries)."""
    exit_code = 5

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int],
        stdout: str = "",
        stderr: str = "",
        attempts: int = 1,
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.attempts = attempts
        super().__init__(
            f"Command failed with exit code {returncode} after {attempts} attempt(s): "
            f"{' '.join(self.command)}"
        )

    def __str__(self) -> str:
        text = self.args[0]
        if self.stderr.strip():
            text = f"{text}\n{self.stderr.strip()}"
        return text


class DeadlineExceeded(StackpilotError):
    """The wall-clock budget of a retried operation ran out."""
    exit_code = 5

    def __init__(
        self,
        description: str,
        elapsed: float,
        deadline: float,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ):
        self.description = description
        self.elapsed = elapsed
        self.deadline = deadline
        self.attempts = attempts
        self.last_error = last_error
        message = (
            f"Deadline of {deadline:.0f}s exceeded for '{description}' "
            f"after {attempts} attempt(s) ({elapsed:.1f}s elapsed)"
        )
        if last_error is not None:
            message = f"{message}; last error: {last_error}"
        super().__init__(message)


class HealthCheckTimeout(StackpilotError):
    """Required services did not all reach healthy before the timeout."""
    exit_code = 6

    def __init__(self, timeout: float, snapshot: Sequence["ServiceHealthRecord"], pending: Sequence[str]):
        self.timeout = timeout
        self.snapshot = list(snapshot)
        self.pending = list(pending)
        super().__init__(
            f"Services did not become healthy within {timeout:.0f}s: {', '.join(self.pending)}"
        )

    def __str__(self) -> str:
        lines = [self.args[0]]
        for record in self.snapshot:
            lines.append(f"  {record.name}: {record.status.value}"
                         + (f" ({record.detail})" if record.detail else ""))
        return "\n".join(lines)


class WorkspacePermissionError(StackpilotError, PermissionError):
    """Filesystem ownership or permission problem in the working directory."""
    exit_code = 7
