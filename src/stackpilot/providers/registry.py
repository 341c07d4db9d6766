"""Provider registry: engines and the ordered compose fallback chain."""

import logging
from typing import Callable, Dict, List

from stackpilot.models.config import RuntimeConfig
from stackpilot.models.runtime import EngineId
from stackpilot.providers.compose import (
    ComposeProvider,
    CrossEngineProvider,
    InstalledFallbackProvider,
    NativePluginProvider,
    StandaloneBinaryProvider,
)
from stackpilot.providers.engine import EngineProvider


logger = logging.getLogger(__name__)

ComposeFactory = Callable[[EngineId, RuntimeConfig], ComposeProvider]


def _fallback_factory(engine: EngineId, config: RuntimeConfig) -> ComposeProvider:
    return InstalledFallbackProvider(
        engine,
        install_path=config.install_path,
        version=config.fallback_version,
        url_template=config.fallback_url,
        sha256=config.fallback_sha256,
        allow_install=config.allow_install,
        probe_timeout=config.probe_timeout,
    )


class ProviderRegistry:
    """Creates engine providers and compose chains from runtime configuration."""

    def __init__(self, config: RuntimeConfig):
        """Initialize provider registry."""
        self.config = config
        self._engines: Dict[EngineId, EngineProvider] = {}
        self._chain_factories: List[ComposeFactory] = [
            lambda engine, cfg: NativePluginProvider(engine, cfg.probe_timeout),
            lambda engine, cfg: StandaloneBinaryProvider(engine, cfg.probe_timeout),
            lambda engine, cfg: CrossEngineProvider(engine, cfg.probe_timeout),
            _fallback_factory,
        ]

    def get_engine(self, engine: EngineId) -> EngineProvider:
        """Get (and cache) the provider for an engine."""
        if engine not in self._engines:
            self._engines[engine] = EngineProvider(engine, self.config.probe_timeout)
        return self._engines[engine]

    def compose_chain(self, engine: EngineId) -> List[ComposeProvider]:
        """Compose providers for ``engine`` in fallback order."""
        return [factory(engine, self.config) for factory in self._chain_factories]
