"""Async subprocess helpers."""

import asyncio
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, Optional, Sequence


logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result from running a command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    cmd: Sequence[str],
    check: bool = True,
    capture_output: bool = True,
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
) -> CommandResult:
    """Run a command asynchronously.

    ``env`` is merged over the current process environment. The child is
    killed on timeout and on cancellation of the awaiting task.
    """
    cmd = [str(c) for c in cmd]
    logger.debug(f"Running command: {' '.join(cmd)}")

    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE if capture_output else None,
        stderr=asyncio.subprocess.PIPE if capture_output else None,
        env=full_env,
        cwd=cwd,
    )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise subprocess.TimeoutExpired(cmd, timeout)
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    result = CommandResult(
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
    )

    if check and process.returncode != 0:
        error = subprocess.CalledProcessError(process.returncode, cmd)
        error.stdout = result.stdout
        error.stderr = result.stderr
        raise error

    return result
