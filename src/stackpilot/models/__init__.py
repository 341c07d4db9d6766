"""Pydantic models for configuration, runtime and stack state."""

from stackpilot.models.config import (
    StackpilotConfig,
    LoggingConfig,
    RuntimeConfig,
    RetryConfig,
    HealthConfig,
    DeployConfig,
    SizeProfile,
)
from stackpilot.models.health import HealthStatus, ServiceHealthRecord, HealthReport, all_healthy
from stackpilot.models.manifest import DigestResolution, ImageEntry, VersionManifest
from stackpilot.models.retry import RetryPolicy
from stackpilot.models.runtime import EngineId, ComposeDriverKind, ProbeAttempt, RuntimeProfile
from stackpilot.models.stack import StackSpec, ServiceDef, StackMetadata, ValidationStatus

__all__ = [
    "StackpilotConfig",
    "LoggingConfig",
    "RuntimeConfig",
    "RetryConfig",
    "HealthConfig",
    "DeployConfig",
    "SizeProfile",
    "HealthStatus",
    "ServiceHealthRecord",
    "HealthReport",
    "all_healthy",
    "DigestResolution",
    "ImageEntry",
    "VersionManifest",
    "RetryPolicy",
    "EngineId",
    "ComposeDriverKind",
    "ProbeAttempt",
    "RuntimeProfile",
    "StackSpec",
    "ServiceDef",
    "StackMetadata",
    "ValidationStatus",
]
