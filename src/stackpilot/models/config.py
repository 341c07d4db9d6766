"""Configuration models."""

import re
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stackpilot.models.retry import RetryPolicy
from stackpilot.models.runtime import EngineId


DEFAULT_FALLBACK_URL = (
    "https://github.com/docker/compose/releases/download/{version}/docker-compose-{system}-{machine}"
)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO")
    file: Optional[str] = Field(default=None, description="Run log sink")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class RuntimeConfig(BaseModel):
    """Engine and compose driver detection settings."""
    engine_order: Optional[List[EngineId]] = None
    probe_timeout: float = Field(default=15.0, gt=0)
    allow_install: bool = True
    install_path: str = Field(default="~/.local/bin/docker-compose")
    fallback_version: str = Field(default="v2.21.0")
    fallback_url: str = Field(default=DEFAULT_FALLBACK_URL)
    fallback_sha256: Optional[str] = None
    os_release_path: str = Field(default="/etc/os-release")

    @field_validator("engine_order")
    @classmethod
    def validate_engine_order(cls, v):
        """Reject duplicate or empty orders."""
        if v is None:
            return v
        if not v:
            raise ValueError("engine_order must not be empty")
        if len(set(v)) != len(v):
            raise ValueError("engine_order contains duplicates")
        return v


class RetryConfig(BaseModel):
    """Named retry policies."""
    start: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=3, base_delay=5, max_delay=30, deadline=300)
    )
    pull: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=2, base_delay=3, max_delay=10, deadline=900)
    )


class HealthConfig(BaseModel):
    """Health polling settings."""
    timeout: float = Field(default=180.0, gt=0)
    poll_interval: float = Field(default=10.0, gt=0)
    required_services: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_interval(self):
        """Poll interval must fit inside the timeout."""
        if self.poll_interval > self.timeout:
            raise ValueError("poll_interval must not exceed timeout")
        return self


class SizeProfile(BaseModel):
    """Cluster sizing used by the stack template."""
    app_nodes: int = Field(default=1, ge=1)
    cpu_limit: str = Field(default="1.0")
    memory_limit: str = Field(default="1G")
    cache_memory: str = Field(default="256mb")


def default_sizes() -> Dict[str, SizeProfile]:
    return {
        "small": SizeProfile(app_nodes=1, cpu_limit="1.0", memory_limit="1G", cache_memory="256mb"),
        "medium": SizeProfile(app_nodes=3, cpu_limit="1.5", memory_limit="2G", cache_memory="512mb"),
        "large": SizeProfile(app_nodes=5, cpu_limit="2.0", memory_limit="4G", cache_memory="1gb"),
    }


class DeployConfig(BaseModel):
    """Deployment defaults."""
    project_name: str = Field(default="stackpilot")
    size: str = Field(default="small")
    monitoring: bool = True
    pin_digests: bool = True
    pull: bool = True
    wait: bool = True
    compose_file: str = Field(default="docker-compose.yml")
    manifest_file: str = Field(default="versions.yaml")
    template_file: Optional[str] = None
    working_dir: str = Field(default=".")
    host_ports: List[int] = Field(default_factory=lambda: [8080, 3000, 9090], description="Checked during preflight")

    @field_validator("project_name")
    @classmethod
    def validate_project_name(cls, v):
        """Compose project names are lower-case."""
        if not re.match(r"^[a-z0-9][a-z0-9_-]*$", v):
            raise ValueError(f"Invalid project name: {v}")
        return v


class StackpilotConfig(BaseModel):
    """Main configuration model."""
    model_config = ConfigDict(extra="ignore")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    sizes: Dict[str, SizeProfile] = Field(default_factory=default_sizes)

    @model_validator(mode="after")
    def check_size(self):
        """The default size must be defined."""
        if self.deploy.size not in self.sizes:
            raise ValueError(f"Unknown size '{self.deploy.size}' (known: {', '.join(sorted(self.sizes))})")
        return self
