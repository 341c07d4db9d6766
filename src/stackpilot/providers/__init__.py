"""Engine and compose driver providers."""

from stackpilot.providers.base import BaseProvider
from stackpilot.providers.compose import (
    ComposeProvider,
    CrossEngineProvider,
    InstalledFallbackProvider,
    NativePluginProvider,
    StandaloneBinaryProvider,
)
from stackpilot.providers.engine import EngineProvider
from stackpilot.providers.registry import ProviderRegistry

__all__ = [
    "BaseProvider",
    "ComposeProvider",
    "CrossEngineProvider",
    "InstalledFallbackProvider",
    "NativePluginProvider",
    "StandaloneBinaryProvider",
    "EngineProvider",
    "ProviderRegistry",
]
