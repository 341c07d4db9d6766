"""Runtime detection models."""

from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class EngineId(str, Enum):
    """Supported container engines."""
    DOCKER = "docker"
    PODMAN = "podman"


class ComposeDriverKind(str, Enum):
    """How the compose driver is provided on the host."""
    NATIVE_PLUGIN = "native-plugin"
    STANDALONE_BINARY = "standalone-binary"
    AUTO_INSTALLED_FALLBACK = "auto-installed-fallback"


class ProbeAttempt(BaseModel):
    """Outcome of one functional probe."""
    name: str
    ok: bool
    detail: str = ""


class RuntimeProfile(BaseModel):
    """Resolved engine and compose driver for one deployment run."""
    model_config = ConfigDict(frozen=True)

    engine_present: Dict[EngineId, bool] = Field(default_factory=dict)
    chosen_engine: EngineId
    compose_driver_kind: ComposeDriverKind
    driver_name: str = Field(..., description="Human-readable driver, e.g. 'docker compose'")
    invocation: List[str] = Field(..., min_length=1, description="argv prefix of the compose driver")
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment for compose calls")
    installable: bool = False
    version: Optional[str] = None
    supports_profiles: bool = True
    supports_healthchecks: bool = True

    def compose_command(
        self,
        *args: str,
        compose_file: Optional[str] = None,
        project: Optional[str] = None,
        profiles: Optional[List[str]] = None,
    ) -> List[str]:
        """Build a full compose argv."""
        cmd = list(self.invocation)
        if project:
            cmd += ["-p", project]
        if compose_file:
            cmd += ["-f", str(compose_file)]
        for profile in profiles or []:
            cmd += ["--profile", profile]
        cmd += list(args)
        return cmd

    def engine_command(self, *args: str) -> List[str]:
        """Build an engine argv."""
        return [self.chosen_engine.value, *args]
