"""Container engine providers."""

import logging
import shutil

from stackpilot.models.runtime import EngineId, ProbeAttempt
from stackpilot.providers.base import BaseProvider


logger = logging.getLogger(__name__)


class EngineProvider(BaseProvider):
    """A container engine (docker or podman).

    Functional availability means ``<engine> info`` answers, i.e. the daemon
    (docker) or the storage/service layer (podman) is reachable.
    """

    def __init__(self, engine: EngineId, probe_timeout: float = 15.0):
        super().__init__(probe_timeout)
        self.engine = engine
        self.invocation = [engine.value]

    @property
    def name(self) -> str:
        return f"engine:{self.engine.value}"

    def is_installed(self) -> bool:
        """Executable presence only."""
        return shutil.which(self.engine.value) is not None

    async def probe(self) -> ProbeAttempt:
        if not self.is_installed():
            return ProbeAttempt(name=self.name, ok=False, detail=f"'{self.engine.value}' not installed")
        attempt = await self._probe_command("info")
        if not attempt.ok:
            logger.debug(f"{self.engine.value} installed but not functional: {attempt.detail}")
        return attempt
