"""Deadline-bounded retry of idempotent external operations."""

import asyncio
import logging
import subprocess
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

from stackpilot.errors import CommandFailed, DeadlineExceeded
from stackpilot.models.retry import RetryPolicy
from stackpilot.utils.process import CommandResult, run_command


logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE: Tuple[Type[BaseException], ...] = (
    CommandFailed,
    subprocess.CalledProcessError,
    subprocess.TimeoutExpired,
)


class ResilientExecutor:
    """Two nested loops: bounded-attempt backoff inside a wall-clock deadline.

    Operations handed to this executor must be idempotent; a retry may re-run
    an attempt that partially completed.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        retry_on: Tuple[Type[BaseException], ...] = RETRYABLE,
    ):
        self.clock = clock
        self.sleep = sleep
        self.retry_on = retry_on
        self.last_command: Optional[List[str]] = None

    async def run_with_deadline(
        self,
        policy: RetryPolicy,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
    ) -> T:
        """Run ``operation`` until it succeeds, attempts run out or the deadline is spent."""
        start = self.clock()
        last_error: Optional[BaseException] = None

        for attempt in range(1, policy.max_attempts + 1):
            elapsed = self.clock() - start
            if elapsed >= policy.deadline:
                raise DeadlineExceeded(description, elapsed, policy.deadline, attempt - 1, last_error)

            try:
                result = await operation()
            except self.retry_on as e:
                last_error = e
            else:
                if attempt > 1:
                    logger.info(f"'{description}' succeeded on attempt {attempt}")
                return result

            if attempt == policy.max_attempts:
                break

            delay = policy.delay_for(attempt)
            elapsed = self.clock() - start
            if elapsed + delay >= policy.deadline:
                logger.error(
                    f"'{description}' attempt {attempt} failed; next delay {delay:.0f}s "
                    f"would exceed the {policy.deadline:.0f}s deadline"
                )
                raise DeadlineExceeded(description, elapsed, policy.deadline, attempt, last_error)

            logger.warning(
                f"'{description}' attempt {attempt}/{policy.max_attempts} failed ({last_error}); "
                f"retrying in {delay:.0f}s"
            )
            await self.sleep(delay)

        logger.error(f"'{description}' failed after {policy.max_attempts} attempt(s)")
        if isinstance(last_error, CommandFailed):
            last_error.attempts = policy.max_attempts
            raise last_error
        if isinstance(last_error, subprocess.CalledProcessError):
            raise CommandFailed(
                last_error.cmd, last_error.returncode, last_error.stdout or "", last_error.stderr or "",
                attempts=policy.max_attempts,
            ) from last_error
        raise CommandFailed(
            self.last_command or [description], None, stderr=str(last_error), attempts=policy.max_attempts,
        ) from last_error

    async def run_command(
        self,
        policy: RetryPolicy,
        cmd: Sequence[str],
        description: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        """Run an external command under ``policy``.

        Each attempt's subprocess timeout is capped by the remaining deadline
        budget, so one in-flight attempt cannot outlive the deadline by more
        than its own kill latency.
        """
        cmd = [str(c) for c in cmd]
        start = self.clock()

        async def attempt() -> CommandResult:
            remaining = max(policy.deadline - (self.clock() - start), 0.001)
            timeout = min(policy.attempt_timeout, remaining) if policy.attempt_timeout else remaining
            self.last_command = cmd
            result = await run_command(cmd, check=False, timeout=timeout, env=env, cwd=cwd)
            if result.returncode != 0:
                raise CommandFailed(cmd, result.returncode, result.stdout, result.stderr)
            return result

        return await self.run_with_deadline(policy, attempt, description or " ".join(cmd))
