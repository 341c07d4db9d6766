"""Shared fixtures."""

import pytest

from stackpilot.models.manifest import VersionManifest
from stackpilot.models.runtime import ComposeDriverKind, EngineId, RuntimeProfile


DIGESTS = {
    "app": "a" * 64,
    "cache": "b" * 64,
    "metrics-collector": "c" * 64,
    "dashboard": "d" * 64,
}


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    """Fake clock starting at t=0."""
    return FakeClock()


def make_runtime(**overrides) -> RuntimeProfile:
    values = dict(
        engine_present={EngineId.DOCKER: True, EngineId.PODMAN: False},
        chosen_engine=EngineId.DOCKER,
        compose_driver_kind=ComposeDriverKind.NATIVE_PLUGIN,
        driver_name="docker compose",
        invocation=["docker", "compose"],
        version="2.21.0",
    )
    values.update(overrides)
    return RuntimeProfile(**values)


@pytest.fixture
def runtime():
    """Docker with the native compose plugin."""
    return make_runtime()


def manifest_data(with_digests: bool = True):
    data = {
        "app": {"repository": "registry.example.com/acme/app", "tag": "1.4.2"},
        "cache": {"repository": "docker.io/library/redis", "tag": "7.2"},
        "metrics-collector": {"repository": "docker.io/prom/prometheus", "tag": "v2.48.0"},
        "dashboard": {"repository": "docker.io/grafana/grafana", "tag": "10.2.2"},
    }
    if with_digests:
        for name, digest in DIGESTS.items():
            data[name]["digest"] = f"sha256:{digest}"
    return data


@pytest.fixture
def manifest():
    """Manifest covering every component of the built-in template."""
    return VersionManifest.from_mapping(manifest_data())
