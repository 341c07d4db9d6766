"""Deployment orchestration: runtime resolution, build, start and health."""

from stackpilot.deploy.builder import StackSpecBuilder, StackTemplate
from stackpilot.deploy.config import ConfigManager
from stackpilot.deploy.digests import DigestResolver
from stackpilot.deploy.controller import (
    DeployRequest,
    DeploymentReport,
    OrchestrationController,
    RunStatus,
    Stage,
)
from stackpilot.deploy.executor import ResilientExecutor
from stackpilot.deploy.health import ClusterHealthMonitor, ComposeInspector, ServiceInspector
from stackpilot.deploy.preflight import HostPreflight, Preflight
from stackpilot.deploy.resolver import RuntimeResolver

__all__ = [
    "StackSpecBuilder",
    "StackTemplate",
    "ConfigManager",
    "DeployRequest",
    "DeploymentReport",
    "OrchestrationController",
    "RunStatus",
    "Stage",
    "ResilientExecutor",
    "DigestResolver",
    "ClusterHealthMonitor",
    "ComposeInspector",
    "ServiceInspector",
    "HostPreflight",
    "Preflight",
    "RuntimeResolver",
]
