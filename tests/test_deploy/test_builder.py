"""Tests for the stack descriptor builder."""

import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from ruamel.yaml import YAML

from stackpilot.deploy.builder import StackSpecBuilder, StackTemplate
from stackpilot.errors import ComposeValidationFailure, InvalidInput
from stackpilot.models.config import default_sizes
from stackpilot.models.manifest import PINNED_REF_RE, VersionManifest
from stackpilot.models.stack import ValidationStatus
from stackpilot.utils.process import CommandResult

from conftest import DIGESTS, make_runtime, manifest_data


SIMPLE_TEMPLATE = """\
services:
  app:
    image: "{{ image('app') }}"
    volumes:
      - app-data:/data
      - ./config:/config:ro
    networks: [backend]
networks:
  backend: {}
volumes:
  app-data: {}
"""


def builder_for(tmp_path, runtime=None, size="small", profiles=("monitoring",)):
    return StackSpecBuilder(
        runtime or make_runtime(),
        tmp_path / "docker-compose.yml",
        default_sizes()[size],
        "shop",
        active_profiles=profiles,
        now=lambda: datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )


def load(path):
    return YAML(typ="safe").load(path.read_text())


@pytest.fixture
def compose_ok():
    with patch("stackpilot.deploy.builder.run_command", new_callable=AsyncMock) as mock_run:
        mock_run.return_value = CommandResult(returncode=0)
        yield mock_run


@pytest.mark.asyncio
class TestDigestPinning:
    """Digest pinning and image sourcing."""

    async def test_pinned_reference(self, tmp_path, compose_ok):
        manifest = VersionManifest.from_mapping({"app": {"repository": "x", "tag": "1.0", "digest": "a" * 64}})

        spec = await builder_for(tmp_path).build(StackTemplate(name="simple", source=SIMPLE_TEMPLATE), manifest)

        assert spec.get_service("app").image == "x@sha256:" + "a" * 64

    async def test_builtin_template_fully_pinned(self, tmp_path, manifest, compose_ok):
        spec = await builder_for(tmp_path, size="medium").build(StackTemplate.builtin(), manifest)

        assert spec.service_names == ["app1", "app2", "app3", "cache", "metrics-collector", "dashboard"]
        for service in spec.services:
            assert PINNED_REF_RE.match(service.image), service.image
        assert spec.get_service("cache").image == f"docker.io/library/redis@sha256:{DIGESTS['cache']}"

    async def test_missing_digest_fails(self, tmp_path, compose_ok):
        data = manifest_data()
        del data["cache"]["digest"]
        del data["dashboard"]["digest"]
        output = tmp_path / "docker-compose.yml"

        with pytest.raises(ComposeValidationFailure) as exc_info:
            await builder_for(tmp_path).build(StackTemplate.builtin(), VersionManifest.from_mapping(data))

        assert exc_info.value.offending == "cache, dashboard"
        assert exc_info.value.exit_code == 4
        assert not output.exists()
        compose_ok.assert_not_awaited()

    async def test_skip_digests_uses_tags(self, tmp_path, compose_ok, caplog):
        manifest = VersionManifest.from_mapping(manifest_data(with_digests=False))

        with caplog.at_level(logging.WARNING):
            spec = await builder_for(tmp_path).build(StackTemplate.builtin(), manifest, pin_digests=False)

        assert spec.get_service("app1").image == "registry.example.com/acme/app:1.4.2"
        assert spec.metadata.digest_pinning is False
        assert "mutable tag" in caplog.text

    async def test_literal_image_rejected(self, tmp_path, manifest, compose_ok):
        template = StackTemplate(name="bad", source="services:\n  app:\n    image: nginx:latest\n")

        with pytest.raises(ComposeValidationFailure) as exc_info:
            await builder_for(tmp_path).build(template, manifest)

        assert exc_info.value.offending == "app: nginx:latest"
        compose_ok.assert_not_awaited()

    async def test_unknown_component_rejected(self, tmp_path, manifest, compose_ok):
        template = StackTemplate(name="bad", source="services:\n  db:\n    image: \"{{ image('postgres') }}\"\n")

        with pytest.raises(ComposeValidationFailure) as exc_info:
            await builder_for(tmp_path).build(template, manifest)

        assert exc_info.value.offending == "postgres"

    async def test_image_reference_outside_image_field_rejected(self, tmp_path, manifest, compose_ok):
        source = (
            "services:\n"
            "  app:\n"
            "    image: \"{{ image('app') }}\"\n"
            "    environment:\n"
            "      SIDECAR: \"{{ image('cache') }}\"\n"
        )
        with pytest.raises(ComposeValidationFailure):
            await builder_for(tmp_path).build(StackTemplate(name="sneaky", source=source), manifest)

    async def test_missing_image(self, tmp_path, manifest, compose_ok):
        template = StackTemplate(name="bad", source="services:\n  app:\n    command: [\"true\"]\n")

        with pytest.raises(ComposeValidationFailure, match="has no image"):
            await builder_for(tmp_path).build(template, manifest)


@pytest.mark.asyncio
class TestStaticChecks:
    """Reference hygiene and template errors."""

    async def test_undeclared_volume(self, tmp_path, manifest, compose_ok):
        source = SIMPLE_TEMPLATE.replace("app-data:/data", "logs:/var/log")

        with pytest.raises(ComposeValidationFailure) as exc_info:
            await builder_for(tmp_path).build(StackTemplate(name="t", source=source), manifest)

        assert exc_info.value.offending == "app: logs"

    async def test_undeclared_network(self, tmp_path, manifest, compose_ok):
        source = SIMPLE_TEMPLATE.replace("networks: [backend]", "networks: [frontend]")

        with pytest.raises(ComposeValidationFailure, match="undeclared network 'frontend'"):
            await builder_for(tmp_path).build(StackTemplate(name="t", source=source), manifest)

    async def test_undefined_template_variable(self, tmp_path, manifest, compose_ok):
        source = SIMPLE_TEMPLATE.replace("/data", "/{{ data_dir }}")

        with pytest.raises(InvalidInput):
            await builder_for(tmp_path).build(StackTemplate(name="t", source=source), manifest)

    async def test_invalid_yaml(self, tmp_path, manifest, compose_ok):
        with pytest.raises(InvalidInput):
            await builder_for(tmp_path).build(StackTemplate(name="t", source="services: [\n"), manifest)

    async def test_version_key_dropped(self, tmp_path, manifest, compose_ok, caplog):
        source = 'version: "3.8"\n' + SIMPLE_TEMPLATE

        with caplog.at_level(logging.WARNING):
            await builder_for(tmp_path).build(StackTemplate(name="t", source=source), manifest)

        assert "version" not in load(tmp_path / "docker-compose.yml")
        assert "deprecated" in caplog.text


@pytest.mark.asyncio
class TestProfiles:
    """Optional service profiles."""

    async def test_profiles_kept_when_supported(self, tmp_path, manifest, compose_ok):
        spec = await builder_for(tmp_path, profiles=()).build(StackTemplate.builtin(), manifest)

        assert spec.profiles == {"monitoring"}
        assert spec.active_profiles == set()
        assert spec.get_service("dashboard").profiles == ["monitoring"]
        assert load(tmp_path / "docker-compose.yml")["services"]["dashboard"]["profiles"] == ["monitoring"]

    async def test_inactive_services_dropped_without_profile_support(self, tmp_path, manifest, compose_ok):
        runtime = make_runtime(supports_profiles=False)
        spec = await builder_for(tmp_path, runtime=runtime, profiles=()).build(StackTemplate.builtin(), manifest)

        assert spec.service_names == ["app1", "cache"]

    async def test_active_services_unprofiled_without_profile_support(self, tmp_path, manifest, compose_ok):
        runtime = make_runtime(supports_profiles=False)
        spec = await builder_for(tmp_path, runtime=runtime).build(StackTemplate.builtin(), manifest)

        assert "dashboard" in spec.service_names
        assert spec.get_service("dashboard").profiles == []
        assert "profiles" not in load(tmp_path / "docker-compose.yml")["services"]["dashboard"]

    async def test_healthchecks_omitted_when_unsupported(self, tmp_path, manifest, compose_ok):
        runtime = make_runtime(supports_healthchecks=False)
        spec = await builder_for(tmp_path, runtime=runtime).build(StackTemplate.builtin(), manifest)

        assert not any(s.has_healthcheck for s in spec.services)


@pytest.mark.asyncio
class TestValidationAndWrite:
    """Driver validation and atomic write."""

    async def test_written_document(self, tmp_path, manifest, compose_ok):
        output = tmp_path / "docker-compose.yml"

        spec = await builder_for(tmp_path).build(StackTemplate.builtin(), manifest)

        text = output.read_text()
        assert text.startswith("# ---")
        assert "# Validation: PASSED" in text
        document = load(output)
        assert document["x-stackpilot"]["validation_status"] == "PASSED"
        assert document["x-stackpilot"]["generated_at"] == "2024-05-01T12:00:00Z"
        assert document["x-stackpilot"]["engine"] == "docker"
        assert set(document["services"]) == set(spec.service_names)
        assert spec.metadata.validation_status == ValidationStatus.PASSED
        assert spec.path == str(output)
        assert list(tmp_path.iterdir()) == [output]

    async def test_validation_uses_driver(self, tmp_path, manifest, compose_ok):
        runtime = make_runtime(invocation=["docker-compose"], env={"DOCKER_HOST": "unix:///run/podman.sock"})

        await builder_for(tmp_path, runtime=runtime).build(StackTemplate.builtin(), manifest)

        cmd = compose_ok.call_args[0][0]
        assert cmd[0] == "docker-compose"
        assert cmd[1] == "-f"
        assert cmd[-2:] == ["config", "--quiet"]
        assert cmd[2].startswith(str(tmp_path))
        assert compose_ok.call_args[1]["env"] == {"DOCKER_HOST": "unix:///run/podman.sock"}

    async def test_validated_candidate_is_pending(self, tmp_path, manifest):
        seen = {}

        async def fake_run(cmd, **kwargs):
            seen["document"] = YAML(typ="safe").load(open(cmd[cmd.index("-f") + 1]).read())
            return CommandResult(returncode=0)

        with patch("stackpilot.deploy.builder.run_command", side_effect=fake_run):
            await builder_for(tmp_path).build(StackTemplate.builtin(), manifest)

        assert seen["document"]["x-stackpilot"]["validation_status"] == "PENDING"

    async def test_rejected_by_driver_leaves_existing_file(self, tmp_path, manifest):
        output = tmp_path / "docker-compose.yml"
        output.write_text("# previous deployment\n")

        with patch("stackpilot.deploy.builder.run_command", new_callable=AsyncMock) as mock_run:
            mock_run.return_value = CommandResult(
                returncode=1, stderr="services.app1.deploy.resources Additional property foo is not allowed"
            )
            with pytest.raises(ComposeValidationFailure) as exc_info:
                await builder_for(tmp_path).build(StackTemplate.builtin(), manifest)

        assert "Additional property foo" in str(exc_info.value)
        assert output.read_text() == "# previous deployment\n"
        assert list(tmp_path.iterdir()) == [output]

    async def test_driver_missing(self, tmp_path, manifest):
        with patch("stackpilot.deploy.builder.run_command", new_callable=AsyncMock) as mock_run:
            mock_run.side_effect = FileNotFoundError("docker")
            with pytest.raises(ComposeValidationFailure):
                await builder_for(tmp_path).build(StackTemplate.builtin(), manifest)

        assert list(tmp_path.iterdir()) == []


SECRETS_TEMPLATE = """\
name: shop-stack
x-common-env: &env
  TZ: UTC
services:
  app:
    image: "{{ image('app') }}"
    environment: *env
    secrets: [app_password]
    configs:
      - source: app_settings
        target: /etc/app/settings.toml
secrets:
  app_password:
    file: ./secrets/app_password.txt
configs:
  app_settings:
    file: ./config/settings.toml
"""


@pytest.mark.asyncio
class TestTopLevelKeys:
    """Top-level compose keys beyond services, networks and volumes."""

    async def test_secrets_configs_and_name_kept(self, tmp_path, manifest, compose_ok):
        spec = await builder_for(tmp_path).build(StackTemplate(name="t", source=SECRETS_TEMPLATE), manifest)

        document = load(tmp_path / "docker-compose.yml")
        assert document["name"] == "shop-stack"
        assert document["secrets"] == {"app_password": {"file": "./secrets/app_password.txt"}}
        assert document["configs"]["app_settings"]["file"] == "./config/settings.toml"
        assert document["x-common-env"] == {"TZ": "UTC"}
        assert document["services"]["app"]["secrets"] == ["app_password"]
        assert set(spec.extra) == {"name", "x-common-env", "secrets", "configs"}

    async def test_extra_keys_reach_validation(self, tmp_path, manifest):
        seen = {}

        async def fake_run(cmd, **kwargs):
            seen["document"] = YAML(typ="safe").load(open(cmd[cmd.index("-f") + 1]).read())
            return CommandResult(returncode=0)

        with patch("stackpilot.deploy.builder.run_command", side_effect=fake_run):
            await builder_for(tmp_path).build(StackTemplate(name="t", source=SECRETS_TEMPLATE), manifest)

        assert "app_password" in seen["document"]["secrets"]

    async def test_undeclared_secret(self, tmp_path, manifest, compose_ok):
        source = SECRETS_TEMPLATE.replace("secrets: [app_password]", "secrets: [db_password]")

        with pytest.raises(ComposeValidationFailure) as exc_info:
            await builder_for(tmp_path).build(StackTemplate(name="t", source=source), manifest)

        assert exc_info.value.offending == "app: db_password"
        compose_ok.assert_not_awaited()

    async def test_undeclared_config(self, tmp_path, manifest, compose_ok):
        source = SECRETS_TEMPLATE.replace("  app_settings:\n    file", "  other_settings:\n    file")

        with pytest.raises(ComposeValidationFailure, match="undeclared config 'app_settings'"):
            await builder_for(tmp_path).build(StackTemplate(name="t", source=source), manifest)


@pytest.mark.asyncio
class TestMalformedStructure:
    """Templates that render to YAML of the wrong shape."""

    @pytest.mark.parametrize("source, fragment", [
        ("services:\n  app: \"{{ image('app') }}\"\n", "service 'app' must be a mapping"),
        ("services: [app]\n", "'services' must be a mapping"),
        (SIMPLE_TEMPLATE.replace("networks:\n  backend: {}", "networks: [backend]"), "top-level 'networks'"),
        (SIMPLE_TEMPLATE.replace("volumes:\n  app-data: {}", "volumes: [app-data]"), "top-level 'volumes'"),
        (SIMPLE_TEMPLATE.replace("networks: [backend]", "networks: backend"), "'networks' of service 'app'"),
        (SIMPLE_TEMPLATE.replace("    networks: [backend]", "    profiles: monitoring"), "'profiles' of service 'app'"),
        (SECRETS_TEMPLATE.replace("secrets: [app_password]", "secrets: app_password"), "'secrets' of service 'app'"),
        ("services:\n  app:\n    image: \"{{ image('app') }}\"\nsecrets: [app_password]\n", "top-level 'secrets'"),
    ])
    async def test_rejected_as_invalid_input(self, tmp_path, manifest, compose_ok, source, fragment):
        with pytest.raises(InvalidInput) as exc_info:
            await builder_for(tmp_path).build(StackTemplate(name="t", source=source), manifest)

        assert fragment in str(exc_info.value)
        assert exc_info.value.exit_code == 2
        compose_ok.assert_not_awaited()
        assert list(tmp_path.iterdir()) == []

    async def test_empty_service_body_reports_missing_image(self, tmp_path, manifest, compose_ok):
        with pytest.raises(ComposeValidationFailure, match="has no image"):
            await builder_for(tmp_path).build(StackTemplate(name="t", source="services:\n  app:\n"), manifest)


class TestStackTemplate:
    """Template loading."""

    def test_builtin(self):
        template = StackTemplate.builtin()
        assert "image('app')" in template.source

    def test_from_missing_file(self, tmp_path):
        with pytest.raises(InvalidInput):
            StackTemplate.from_file(tmp_path / "missing.j2")
