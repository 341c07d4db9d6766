"""Container engine and compose driver detection."""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from stackpilot.errors import RuntimeDetectionFailure
from stackpilot.models.config import RuntimeConfig
from stackpilot.models.runtime import EngineId, ProbeAttempt, RuntimeProfile
from stackpilot.providers.registry import ProviderRegistry


logger = logging.getLogger(__name__)

DOCKER_FIRST_DISTROS = ("ubuntu", "debian")
RHEL_FAMILY = ("rhel", "centos", "rocky", "almalinux")


def read_os_release(path: str = "/etc/os-release") -> Dict[str, str]:
    """Parse an os-release file; missing or unreadable files yield {}."""
    try:
        content = Path(path).read_text()
    except OSError:
        return {}

    values = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def default_engine_order(os_release: Dict[str, str]) -> List[EngineId]:
    """Platform-aware default order.

    Docker goes first on Debian/Ubuntu and on RHEL 8-family hosts, whose
    Python 3.6 breaks podman-compose; Podman goes first everywhere else.
    """
    distro = os_release.get("ID", "").lower()
    version = os_release.get("VERSION_ID", "")

    if distro in DOCKER_FIRST_DISTROS:
        return [EngineId.DOCKER, EngineId.PODMAN]
    if distro in RHEL_FAMILY and version.startswith("8"):
        return [EngineId.DOCKER, EngineId.PODMAN]
    return [EngineId.PODMAN, EngineId.DOCKER]


class RuntimeResolver:
    """Selects the first functional engine, then the first functional compose driver."""

    def __init__(self, config: RuntimeConfig, registry: Optional[ProviderRegistry] = None):
        self.config = config
        self.registry = registry or ProviderRegistry(config)

    def candidate_order(self, override: Optional[Sequence[EngineId]] = None) -> List[EngineId]:
        """Explicit override > configured order > platform default."""
        if override:
            order = [EngineId(e) for e in override]
            source = "explicit override"
        elif self.config.engine_order:
            order = list(self.config.engine_order)
            source = "configuration"
        else:
            order = default_engine_order(read_os_release(self.config.os_release_path))
            source = "platform default"
        logger.debug(f"Engine candidate order ({source}): {', '.join(e.value for e in order)}")
        return order

    async def resolve(self, candidate_order: Optional[Sequence[EngineId]] = None) -> RuntimeProfile:
        """Resolve the runtime profile or raise ``RuntimeDetectionFailure``."""
        logger.info("Detecting container runtime and compose implementation")
        attempts: List[ProbeAttempt] = []

        engine_present = {
            engine: self.registry.get_engine(engine).is_installed() for engine in EngineId
        }

        chosen: Optional[EngineId] = None
        for engine in self.candidate_order(candidate_order):
            attempt = await self.registry.get_engine(engine).probe()
            attempts.append(attempt)
            if attempt.ok:
                chosen = engine
                break
            logger.info(f"Engine {engine.value} unavailable: {attempt.detail}")

        if chosen is None:
            raise RuntimeDetectionFailure("No functional container engine found", attempts)

        logger.info(f"Using container engine: {chosen.value}")

        installable = False
        for provider in self.registry.compose_chain(chosen):
            installable = installable or provider.installable
            attempt = await provider.probe()
            attempts.append(attempt)
            if not attempt.ok:
                logger.info(f"Compose driver '{provider.name}' unavailable: {attempt.detail}")
                continue

            profile = RuntimeProfile(
                engine_present=engine_present,
                chosen_engine=chosen,
                compose_driver_kind=provider.kind,
                driver_name=provider.name,
                invocation=list(provider.invocation),
                env=dict(provider.env),
                installable=installable,
                version=provider.version,
                supports_profiles=provider.supports_profiles,
                supports_healthchecks=provider.supports_healthchecks,
            )
            logger.info(
                f"Using compose driver: {profile.driver_name} ({profile.compose_driver_kind.value}"
                + (f", v{profile.version}" if profile.version else "") + ")"
            )
            return profile

        raise RuntimeDetectionFailure(
            f"No functional compose driver found for {chosen.value}", attempts
        )
