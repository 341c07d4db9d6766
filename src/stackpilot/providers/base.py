"""Base provider interface."""

import re
import subprocess
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from stackpilot.models.runtime import ProbeAttempt
from stackpilot.utils.process import CommandResult, run_command


VERSION_RE = re.compile(r"(\d+\.\d+\.\d+)")


class BaseProvider(ABC):
    """A host capability that can be functionally probed and then invoked."""

    #: argv prefix used to invoke the capability
    invocation: List[str] = []
    #: extra environment for every invocation
    env: Dict[str, str] = {}

    def __init__(self, probe_timeout: float = 15.0):
        self.probe_timeout = probe_timeout
        self.version: Optional[str] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name."""

    @abstractmethod
    async def probe(self) -> ProbeAttempt:
        """Check that the capability actually works (not merely exists)."""

    def command(self, *args: str) -> List[str]:
        return [*self.invocation, *args]

    async def invoke(self, *args: str, timeout: Optional[float] = None, check: bool = True) -> CommandResult:
        """Run the capability with the given arguments."""
        return await run_command(self.command(*args), check=check, timeout=timeout, env=self.env or None)

    async def _probe_command(self, *args: str) -> ProbeAttempt:
        """Run a no-op command and turn the outcome into a probe result."""
        cmd = self.command(*args)
        try:
            result = await run_command(cmd, check=False, timeout=self.probe_timeout, env=self.env or None)
        except FileNotFoundError:
            return ProbeAttempt(name=self.name, ok=False, detail=f"'{cmd[0]}' not found")
        except PermissionError as e:
            return ProbeAttempt(name=self.name, ok=False, detail=f"permission denied: {e}")
        except subprocess.TimeoutExpired:
            return ProbeAttempt(
                name=self.name, ok=False, detail=f"'{' '.join(cmd)}' timed out after {self.probe_timeout:.0f}s"
            )

        if result.returncode != 0:
            reason = (result.stderr or result.stdout).strip().splitlines()
            detail = reason[-1] if reason else "no output"
            return ProbeAttempt(
                name=self.name, ok=False, detail=f"'{' '.join(cmd)}' exited {result.returncode}: {detail}"
            )

        match = VERSION_RE.search(result.stdout)
        self.version = match.group(1) if match else None
        return ProbeAttempt(name=self.name, ok=True, detail=f"'{' '.join(cmd)}' succeeded")
