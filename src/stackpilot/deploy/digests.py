"""Resolve manifest tags to immutable content digests."""

import logging
import subprocess
from typing import List, Optional

from stackpilot.deploy.executor import ResilientExecutor
from stackpilot.errors import CommandFailed, DeadlineExceeded
from stackpilot.models.manifest import DIGEST_RE, DigestResolution, ImageEntry, VersionManifest
from stackpilot.models.retry import RetryPolicy
from stackpilot.models.runtime import RuntimeProfile
from stackpilot.utils.process import run_command


logger = logging.getLogger(__name__)

REPO_DIGESTS_FORMAT = "{{range .RepoDigests}}{{println .}}{{end}}"


class DigestLookupError(Exception):
    """The engine could not report a digest for an image."""


def _normalize_repository(repository: str) -> str:
    """Strip the implicit Docker Hub registry and ``library/`` namespace."""
    for prefix in ("docker.io/", "index.docker.io/", "registry-1.docker.io/"):
        if repository.startswith(prefix):
            repository = repository[len(prefix):]
            break
    if repository.startswith("library/") and repository.count("/") == 1:
        repository = repository[len("library/"):]
    return repository


def pick_repo_digest(repository: str, repo_digests: List[str]) -> str:
    """Digest of the ``repo@sha256:...`` line matching ``repository``.

    Engines disagree on registry prefixes (docker reports ``redis@...`` where
    podman reports ``docker.io/library/redis@...``), so names are compared
    normalized. With no match the first entry wins.
    """
    lines = [line.strip() for line in repo_digests if "@" in line]
    if not lines:
        raise DigestLookupError("no RepoDigests reported")

    wanted = _normalize_repository(repository)
    match = next((line for line in lines if _normalize_repository(line.split("@", 1)[0]) == wanted), lines[0])

    found = DIGEST_RE.match(match.split("@", 1)[1])
    if not found:
        raise DigestLookupError(f"unexpected digest in {match!r}")
    return found.group(1).lower()


class DigestResolver:
    """Pulls each ``repository:tag`` with the resolved engine and reads its digest."""

    def __init__(
        self,
        runtime: RuntimeProfile,
        executor: ResilientExecutor,
        pull_policy: RetryPolicy,
        inspect_timeout: float = 30.0,
    ):
        self.runtime = runtime
        self.executor = executor
        self.pull_policy = pull_policy
        self.inspect_timeout = inspect_timeout

    async def resolve(self, manifest: VersionManifest, components: Optional[List[str]] = None) -> DigestResolution:
        """Resolve every component (or ``components``); failures are skipped, not fatal."""
        result = DigestResolution()
        for name, entry in manifest.components.items():
            if components is not None and name not in components:
                continue

            logger.info(f"Resolving digest of {name} ({entry.tagged_ref})")
            try:
                digest = await self.resolve_entry(entry)
            except (CommandFailed, DeadlineExceeded, DigestLookupError) as e:
                logger.warning(f"Skipping {name}: digest resolution failed for {entry.tagged_ref}: {e}")
                result.skipped[name] = str(e).splitlines()[0] if str(e) else type(e).__name__
                continue

            result.resolved[name] = digest
            if digest != entry.digest:
                result.changed.append(name)
                logger.info(f"{entry.tagged_ref} -> sha256:{digest}")
            else:
                logger.info(f"{entry.tagged_ref} unchanged (sha256:{digest[:12]})")
        return result

    async def resolve_entry(self, entry: ImageEntry) -> str:
        ref = entry.tagged_ref
        await self.executor.run_command(
            self.pull_policy,
            self.runtime.engine_command("pull", ref),
            description=f"pull {ref}",
            env=self.runtime.env or None,
        )

        cmd = self.runtime.engine_command("image", "inspect", "--format", REPO_DIGESTS_FORMAT, ref)
        try:
            result = await run_command(cmd, check=True, timeout=self.inspect_timeout, env=self.runtime.env or None)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip().splitlines()
            raise DigestLookupError(f"inspect failed: {stderr[-1] if stderr else f'exit code {e.returncode}'}") from e
        except (subprocess.TimeoutExpired, OSError) as e:
            raise DigestLookupError(f"inspect failed: {e}") from e

        return pick_repo_digest(entry.repository, result.stdout.splitlines())
