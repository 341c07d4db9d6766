"""Stack descriptor rendering, digest pinning and validation."""

import io
import logging
import re
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from jinja2 import TemplateError
from pydantic import BaseModel
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from stackpilot import __version__
from stackpilot.errors import ComposeValidationFailure, InvalidInput
from stackpilot.models.config import SizeProfile
from stackpilot.models.manifest import ImageEntry, VersionManifest
from stackpilot.models.runtime import RuntimeProfile
from stackpilot.models.stack import ServiceDef, StackMetadata, StackSpec, ValidationStatus
from stackpilot.utils.fs import atomic_write, scoped_tempfile, write_text_synced
from stackpilot.utils.process import run_command
from stackpilot.utils.templates import render_template


logger = logging.getLogger(__name__)

GENERATOR = f"stackpilot/{__version__}"
BUILTIN_TEMPLATE = Path(__file__).resolve().parent.parent / "templates" / "stack.yaml.j2"

IMAGE_MARKER = "@@stackpilot-image:{}@@"
IMAGE_MARKER_RE = re.compile(r"^@@stackpilot-image:([A-Za-z0-9_.-]+)@@$")
IMAGE_MARKER_PREFIX = "@@stackpilot-image:"

RESERVED_KEYS = ("services", "networks", "volumes", "version", "x-stackpilot")


class StackTemplate(BaseModel):
    """A Jinja2 stack descriptor template."""
    name: str
    source: str

    @classmethod
    def builtin(cls) -> "StackTemplate":
        return cls(name="builtin:stack", source=BUILTIN_TEMPLATE.read_text())

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StackTemplate":
        path = Path(path)
        try:
            return cls(name=str(path), source=path.read_text())
        except OSError as e:
            raise InvalidInput(f"Cannot read stack template {path}: {e}") from e


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StackSpecBuilder:
    """Renders, pins, checks, validates and atomically writes the stack descriptor."""

    def __init__(
        self,
        runtime: RuntimeProfile,
        output_path: Union[str, Path],
        size: SizeProfile,
        project_name: str,
        active_profiles: Optional[Iterable[str]] = None,
        validate_timeout: float = 60.0,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.runtime = runtime
        self.output_path = Path(output_path)
        self.size = size
        self.project_name = project_name
        self.active_profiles: Set[str] = set(active_profiles or [])
        self.validate_timeout = validate_timeout
        self.now = now
        self.yaml = YAML()
        self.yaml.default_flow_style = False
        self.yaml.indent(mapping=2, sequence=4, offset=2)
        self._loader = YAML(typ="safe", pure=True)

    async def build(self, template: StackTemplate, manifest: VersionManifest, pin_digests: bool = True) -> StackSpec:
        """Build the descriptor; nothing reaches ``output_path`` unless it validated."""
        logger.info(f"Generating stack descriptor from {template.name} -> {self.output_path}")
        if pin_digests:
            self._require_digests(manifest)

        document = self._parse(self.render(template, manifest), template)
        spec = self._to_spec(document, manifest, pin_digests, template)
        self._check_references(spec)
        spec = self._apply_profiles(spec)

        with scoped_tempfile(self.output_path, suffix=".validate.yml") as candidate:
            write_text_synced(candidate, self.serialize(spec))
            await self.validate(candidate)

        spec = spec.model_copy(update={
            "metadata": spec.metadata.model_copy(update={"validation_status": ValidationStatus.PASSED}),
            "path": str(self.output_path),
        })
        atomic_write(self.output_path, self.serialize(spec))
        logger.info(
            f"Stack descriptor written: {self.output_path} "
            f"({len(spec.services)} services, digests {'pinned' if pin_digests else 'NOT pinned'})"
        )
        return spec

    def render(self, template: StackTemplate, manifest: VersionManifest) -> str:
        """Render the template; ``image(component)`` is the only sanctioned image source."""

        def image(component: str) -> str:
            if component not in manifest:
                raise ComposeValidationFailure(
                    f"Template {template.name} references image component '{component}' "
                    f"which is not in the version manifest",
                    offending=component,
                )
            return IMAGE_MARKER.format(component)

        try:
            return render_template(
                template.source,
                image=image,
                project=self.project_name,
                size=self.size,
                monitoring="monitoring" in self.active_profiles,
                healthchecks=self.runtime.supports_healthchecks,
            )
        except TemplateError as e:
            raise InvalidInput(f"Cannot render stack template {template.name}: {e}") from e

    def serialize(self, spec: StackSpec) -> str:
        meta = spec.metadata
        header = (
            "# ------------------------------------------------------------------------------\n"
            f"# Generated by: {meta.generator}\n"
            f"# Generated at: {meta.generated_at}\n"
            f"# Template: {meta.template}\n"
            f"# Compose engine: {meta.engine} ({meta.driver})\n"
            f"# Digest pinning: {'enabled' if meta.digest_pinning else 'disabled'}\n"
            f"# Validation: {meta.validation_status.value}\n"
            "# Do not edit this file manually; it will be overwritten.\n"
            "# ------------------------------------------------------------------------------\n"
        )
        stream = io.StringIO()
        self.yaml.dump(spec.to_document(), stream)
        body = stream.getvalue()
        if IMAGE_MARKER_PREFIX in body:
            raise ComposeValidationFailure(
                "Image reference used outside a service 'image' field", offending=IMAGE_MARKER_PREFIX
            )
        return header + body

    async def validate(self, candidate: Path):
        """Dry-run the descriptor through the resolved compose driver."""
        cmd = self.runtime.compose_command("config", "--quiet", compose_file=str(candidate))
        logger.info(f"Validating stack descriptor with {self.runtime.driver_name}")
        try:
            result = await run_command(
                cmd, check=False, timeout=self.validate_timeout,
                env=self.runtime.env or None, cwd=str(self.output_path.parent),
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ComposeValidationFailure(
                f"Could not run compose validation: {e}", offending=" ".join(cmd)
            ) from e

        if result.returncode != 0:
            raise ComposeValidationFailure(
                f"Compose schema validation failed with {self.runtime.driver_name} "
                f"(exit {result.returncode})",
                offending=" ".join(cmd),
                output=result.stderr or result.stdout,
            )
        logger.info("Compose schema validation passed")

    def _require_digests(self, manifest: VersionManifest):
        missing = [name for name, entry in manifest.components.items() if not entry.digest]
        if missing:
            raise ComposeValidationFailure(
                "Digest pinning is enabled but manifest entries have no digest "
                "(resolve digests or deploy with --skip-digests)",
                offending=", ".join(sorted(missing)),
            )

    def _parse(self, rendered: str, template: StackTemplate) -> Dict[str, Any]:
        try:
            document = self._loader.load(rendered)
        except YAMLError as e:
            raise InvalidInput(f"Stack template {template.name} did not render to valid YAML: {e}") from e
        if not isinstance(document, dict):
            raise InvalidInput(f"Stack template {template.name} must render to a mapping")
        return document

    def _to_spec(
        self,
        document: Dict[str, Any],
        manifest: VersionManifest,
        pin_digests: bool,
        template: StackTemplate,
    ) -> StackSpec:
        if "version" in document:
            logger.warning(f"Dropping deprecated top-level 'version: {document['version']}' field")

        services = document.get("services") or {}
        if not isinstance(services, dict):
            raise InvalidInput(f"Stack template {template.name}: 'services' must be a mapping")
        if not services:
            raise ComposeValidationFailure(f"Stack template {template.name} defines no services")

        defs: List[ServiceDef] = []
        for name, body in services.items():
            if body is None:
                body = {}
            if not isinstance(body, dict):
                raise InvalidInput(
                    f"Stack template {template.name}: service '{name}' must be a mapping, "
                    f"got {type(body).__name__}"
                )
            body = dict(body)
            raw_image = body.pop("image", None)
            if raw_image is None:
                raise ComposeValidationFailure(f"Service '{name}' has no image", offending=name)

            match = IMAGE_MARKER_RE.match(str(raw_image))
            if not match:
                raise ComposeValidationFailure(
                    f"Service '{name}' uses a literal image reference; "
                    f"images must come from the version manifest via image('<component>')",
                    offending=f"{name}: {raw_image}",
                )

            image = self._resolve_image(name, manifest.get(match.group(1)), pin_digests)
            profiles = body.pop("profiles", None) or []
            if not isinstance(profiles, list) or not all(isinstance(p, str) for p in profiles):
                raise InvalidInput(
                    f"Stack template {template.name}: 'profiles' of service '{name}' must be a list of names"
                )
            _require_type(template, f"'networks' of service '{name}'", body.get("networks"), (list, dict))
            _require_type(template, f"'volumes' of service '{name}'", body.get("volumes"), (list,))
            for kind in ("secrets", "configs"):
                _require_type(template, f"'{kind}' of service '{name}'", body.get(kind), (list,))
            defs.append(ServiceDef(name=name, image=image, profiles=profiles, definition=body))

        networks = _require_type(template, "top-level 'networks'", document.get("networks"), (dict,))
        volumes = _require_type(template, "top-level 'volumes'", document.get("volumes"), (dict,))
        for kind in ("secrets", "configs"):
            _require_type(template, f"top-level '{kind}'", document.get(kind), (dict,))
        extra = {key: value for key, value in document.items() if key not in RESERVED_KEYS}

        declared_profiles = {p for d in defs for p in d.profiles}
        metadata = StackMetadata(
            generated_at=self.now().strftime("%Y-%m-%dT%H:%M:%SZ"),
            generator=GENERATOR,
            template=template.name,
            engine=self.runtime.chosen_engine.value,
            driver=self.runtime.driver_name,
            digest_pinning=pin_digests,
        )
        return StackSpec(
            services=defs,
            networks=dict(networks or {}),
            volumes=dict(volumes or {}),
            extra=extra,
            profiles=declared_profiles,
            active_profiles=self.active_profiles & declared_profiles,
            metadata=metadata,
        )

    def _resolve_image(self, service: str, entry: ImageEntry, pin_digests: bool) -> str:
        if pin_digests:
            return entry.pinned_ref
        logger.warning(f"Using mutable tag for {service}: {entry.tagged_ref} (digest pinning disabled)")
        return entry.tagged_ref

    def _check_references(self, spec: StackSpec):
        """Every named volume, network, secret and config a service uses must be declared."""
        for service in spec.services:
            networks = service.definition.get("networks") or []
            names = networks.keys() if isinstance(networks, dict) else networks
            for network in names:
                if network != "default" and network not in spec.networks:
                    raise ComposeValidationFailure(
                        f"Service '{service.name}' uses undeclared network '{network}'",
                        offending=f"{service.name}: {network}",
                    )

            for volume in service.definition.get("volumes") or []:
                source = _named_volume(volume)
                if source and source not in spec.volumes:
                    raise ComposeValidationFailure(
                        f"Service '{service.name}' uses undeclared volume '{source}'",
                        offending=f"{service.name}: {source}",
                    )

            for kind in ("secrets", "configs"):
                declared = spec.extra.get(kind) or {}
                for entry in service.definition.get(kind) or []:
                    source = entry.get("source") if isinstance(entry, dict) else entry
                    if source not in declared:
                        raise ComposeValidationFailure(
                            f"Service '{service.name}' uses undeclared {kind[:-1]} '{source}'",
                            offending=f"{service.name}: {source}",
                        )

    def _apply_profiles(self, spec: StackSpec) -> StackSpec:
        """Drop inactive profiled services when the driver cannot filter them itself."""
        if self.runtime.supports_profiles or not spec.profiles:
            return spec

        kept = []
        for service in spec.services:
            if service.profiles and not set(service.profiles) & spec.active_profiles:
                logger.info(
                    f"Driver {self.runtime.driver_name} lacks profile support; "
                    f"omitting service '{service.name}' (profiles: {', '.join(service.profiles)})"
                )
                continue
            kept.append(service.model_copy(update={"profiles": []}))
        return spec.model_copy(update={"services": kept})


def _named_volume(volume: Any) -> Optional[str]:
    """Named volume source of a short or long volume entry, or None for bind mounts."""
    if isinstance(volume, dict):
        if volume.get("type", "volume") != "volume":
            return None
        source = volume.get("source")
    else:
        source = str(volume).split(":", 1)[0] if ":" in str(volume) else None
    if not source or source.startswith(("/", ".", "~", "$")):
        return None
    return source


def _require_type(template: StackTemplate, what: str, value: Any, types: tuple) -> Any:
    """``value`` unless it is present with the wrong YAML shape."""
    if value is not None and not isinstance(value, types):
        expected = " or ".join("mapping" if t is dict else "list" for t in types)
        raise InvalidInput(
            f"Stack template {template.name}: {what} must be a {expected}, got {type(value).__name__}"
        )
    return value
