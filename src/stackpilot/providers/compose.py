"""Compose driver providers, in fallback order."""

import hashlib
import logging
import os
import platform
import shutil
from pathlib import Path
from typing import Dict, Optional

import httpx

from stackpilot.models.runtime import ComposeDriverKind, EngineId, ProbeAttempt
from stackpilot.providers.base import BaseProvider
from stackpilot.utils.fs import scoped_tempfile


logger = logging.getLogger(__name__)

STANDALONE_BINARIES: Dict[EngineId, str] = {
    EngineId.DOCKER: "docker-compose",
    EngineId.PODMAN: "podman-compose",
}

MACHINE_ALIASES = {
    "amd64": "x86_64",
    "arm64": "aarch64",
    "armv7l": "armv7",
}


def podman_socket_path() -> Path:
    """Podman's Docker-compatible API socket for the current user."""
    if os.getuid() == 0:
        return Path("/run/podman/podman.sock")
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR") or f"/run/user/{os.getuid()}"
    return Path(runtime_dir) / "podman" / "podman.sock"


class ComposeProvider(BaseProvider):
    """A way of running compose against a given engine."""

    kind: ComposeDriverKind = ComposeDriverKind.NATIVE_PLUGIN

    def __init__(self, engine: EngineId, probe_timeout: float = 15.0):
        super().__init__(probe_timeout)
        self.engine = engine
        self.env = {}

    @property
    def supports_profiles(self) -> bool:
        return True

    @property
    def supports_healthchecks(self) -> bool:
        return True

    @property
    def installable(self) -> bool:
        return False


class NativePluginProvider(ComposeProvider):
    """``docker compose`` / ``podman compose``."""

    kind = ComposeDriverKind.NATIVE_PLUGIN

    def __init__(self, engine: EngineId, probe_timeout: float = 15.0):
        super().__init__(engine, probe_timeout)
        self.invocation = [engine.value, "compose"]

    @property
    def name(self) -> str:
        return f"{self.engine.value} compose"

    async def probe(self) -> ProbeAttempt:
        return await self._probe_command("version")


class StandaloneBinaryProvider(ComposeProvider):
    """``docker-compose`` for docker, the python ``podman-compose`` for podman."""

    kind = ComposeDriverKind.STANDALONE_BINARY

    def __init__(self, engine: EngineId, probe_timeout: float = 15.0):
        super().__init__(engine, probe_timeout)
        self.invocation = [STANDALONE_BINARIES[engine]]

    @property
    def name(self) -> str:
        return self.invocation[0]

    @property
    def supports_profiles(self) -> bool:
        # podman-compose and docker-compose v1 lack reliable profile support
        if self.engine is EngineId.PODMAN:
            return False
        return self.version is not None and int(self.version.split(".")[0]) >= 2

    async def probe(self) -> ProbeAttempt:
        if shutil.which(self.invocation[0]) is None:
            return ProbeAttempt(name=self.name, ok=False, detail=f"'{self.invocation[0]}' not installed")
        return await self._probe_command("version")


class CrossEngineProvider(ComposeProvider):
    """Docker's standalone ``docker-compose`` driving Podman's API socket."""

    kind = ComposeDriverKind.STANDALONE_BINARY

    def __init__(self, engine: EngineId, probe_timeout: float = 15.0, socket_path: Optional[Path] = None):
        super().__init__(engine, probe_timeout)
        self.invocation = [STANDALONE_BINARIES[EngineId.DOCKER]]
        self.socket_path = socket_path
        if engine is EngineId.PODMAN:
            self.socket_path = socket_path or podman_socket_path()
            self.env = {"DOCKER_HOST": f"unix://{self.socket_path}"}

    @property
    def name(self) -> str:
        return f"docker-compose via {self.engine.value} socket"

    async def probe(self) -> ProbeAttempt:
        if self.engine is not EngineId.PODMAN:
            return ProbeAttempt(
                name=self.name, ok=False, detail=f"not applicable: {self.engine.value} exposes no foreign-engine socket"
            )
        if not self.socket_path.exists():
            return ProbeAttempt(name=self.name, ok=False, detail=f"podman socket not found at {self.socket_path}")
        if shutil.which(self.invocation[0]) is None:
            return ProbeAttempt(name=self.name, ok=False, detail=f"'{self.invocation[0]}' not installed")
        return await self._probe_command("version")


class InstalledFallbackProvider(ComposeProvider):
    """A pinned docker-compose release installed on demand.

    This is the only provider that writes outside the working directory. It
    is idempotent: a functional binary already at ``install_path`` is reused.
    """

    kind = ComposeDriverKind.AUTO_INSTALLED_FALLBACK

    def __init__(
        self,
        engine: EngineId,
        install_path: str,
        version: str,
        url_template: str,
        sha256: Optional[str] = None,
        allow_install: bool = True,
        probe_timeout: float = 15.0,
        download_timeout: float = 120.0,
        socket_path: Optional[Path] = None,
    ):
        super().__init__(engine, probe_timeout)
        self.install_path = Path(install_path).expanduser()
        self.pinned_version = version
        self.url_template = url_template
        self.sha256 = sha256.lower() if sha256 else None
        self.allow_install = allow_install
        self.download_timeout = download_timeout
        self.invocation = [str(self.install_path)]
        self.socket_path = None
        if engine is EngineId.PODMAN:
            self.socket_path = socket_path or podman_socket_path()
            self.env = {"DOCKER_HOST": f"unix://{self.socket_path}"}

    @property
    def name(self) -> str:
        return f"docker-compose {self.pinned_version} at {self.install_path}"

    @property
    def installable(self) -> bool:
        return self.allow_install and platform.system().lower() in ("linux", "darwin")

    def download_url(self) -> str:
        machine = platform.machine().lower()
        return self.url_template.format(
            version=self.pinned_version,
            system=platform.system().lower(),
            machine=MACHINE_ALIASES.get(machine, machine),
        )

    def is_installed(self) -> bool:
        return self.install_path.is_file() and os.access(self.install_path, os.X_OK)

    async def probe(self) -> ProbeAttempt:
        if self.socket_path is not None and not self.socket_path.exists():
            return ProbeAttempt(name=self.name, ok=False, detail=f"podman socket not found at {self.socket_path}")

        if self.is_installed():
            attempt = await self._probe_command("version")
            if attempt.ok:
                logger.debug(f"Reusing installed {self.install_path}")
                return attempt
            logger.warning(f"Existing {self.install_path} is not functional: {attempt.detail}")

        if not self.installable:
            return ProbeAttempt(
                name=self.name, ok=False, detail=f"not installed at {self.install_path} and install is disabled"
            )

        try:
            await self.install()
        except (httpx.HTTPError, OSError, ValueError) as e:
            return ProbeAttempt(name=self.name, ok=False, detail=f"install failed: {e}")

        return await self._probe_command("version")

    async def install(self):
        """Download the pinned release and move it into place atomically."""
        url = self.download_url()
        logger.info(f"Installing docker-compose {self.pinned_version} fallback from {url}")
        self.install_path.parent.mkdir(parents=True, exist_ok=True)

        hasher = hashlib.sha256()
        with scoped_tempfile(self.install_path, suffix=".download") as tmp:
            async with httpx.AsyncClient(follow_redirects=True, timeout=self.download_timeout) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(tmp, "wb") as fh:
                        async for chunk in response.aiter_bytes():
                            hasher.update(chunk)
                            fh.write(chunk)

            if self.sha256 and hasher.hexdigest() != self.sha256:
                raise ValueError(
                    f"checksum mismatch for {url}: expected {self.sha256}, got {hasher.hexdigest()}"
                )

            os.chmod(tmp, 0o755)
            os.replace(tmp, self.install_path)

        logger.info(f"Installed {self.install_path}")
