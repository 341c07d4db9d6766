"""Configuration, manifest and template loading."""

import io
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from stackpilot.deploy.builder import StackTemplate
from stackpilot.errors import InvalidInput
from stackpilot.models.config import StackpilotConfig
from stackpilot.models.manifest import VersionManifest
from stackpilot.utils.fs import atomic_write


logger = logging.getLogger(__name__)

CONFIG_FILE = "stackpilot.yaml"
TRUE_VALUES = ("1", "true", "yes", "on")
FALSE_VALUES = ("0", "false", "no", "off")


class ConfigManager:
    """Loads ``stackpilot.yaml``, the version manifest and the stack template."""

    def __init__(self, config_dir: Optional[Union[str, Path]] = None, environ: Optional[Dict[str, str]] = None):
        """Initialize configuration manager."""
        self.environ = os.environ if environ is None else environ
        self.config_dir = Path(config_dir or self.environ.get("STACKPILOT_CONFIG_DIR") or ".")
        self.yaml = YAML(typ="safe", pure=True)
        self.config: Optional[StackpilotConfig] = None

    def load(self) -> StackpilotConfig:
        """Load the main configuration and apply environment overrides."""
        config_file = self.config_dir / CONFIG_FILE
        data: Dict[str, Any] = {}
        if config_file.exists():
            data = self._read_yaml(config_file) or {}
            if not isinstance(data, dict):
                raise InvalidInput(f"{config_file} must contain a mapping")
            logger.debug(f"Loaded main config: {config_file}")
        else:
            logger.debug(f"No {config_file}; using defaults")

        self._apply_env(data)

        try:
            self.config = StackpilotConfig(**data)
        except ValidationError as e:
            raise InvalidInput(f"Invalid configuration in {config_file}: {e}") from e
        return self.config

    def _apply_env(self, data: Dict[str, Any]):
        """Overlay ``STACKPILOT_*`` environment variables onto raw config data."""
        engine = self.environ.get("STACKPILOT_ENGINE")
        if engine:
            runtime = data.setdefault("runtime", {})
            runtime["engine_order"] = [e.strip().lower() for e in engine.split(",") if e.strip()]

        level = self.environ.get("STACKPILOT_LOG_LEVEL")
        if level:
            data.setdefault("logging", {})["level"] = level

        allow = self.environ.get("STACKPILOT_ALLOW_INSTALL")
        if allow:
            value = allow.strip().lower()
            if value not in TRUE_VALUES + FALSE_VALUES:
                raise InvalidInput(f"STACKPILOT_ALLOW_INSTALL must be one of 0/1/true/false, got {allow!r}")
            data.setdefault("runtime", {})["allow_install"] = value in TRUE_VALUES

    def resolve_path(self, path: Union[str, Path]) -> Path:
        """Relative paths are taken from the config directory."""
        path = Path(path).expanduser()
        return path if path.is_absolute() else self.config_dir / path

    def load_manifest(self, path: Union[str, Path]) -> VersionManifest:
        """Load the version manifest."""
        path = self.resolve_path(path)
        if not path.exists():
            raise InvalidInput(f"Version manifest not found: {path}")

        data = self._read_yaml(path)
        if not isinstance(data, dict) or not data:
            raise InvalidInput(f"Version manifest {path} must be a non-empty mapping")
        try:
            manifest = VersionManifest.from_mapping(data)
        except (ValidationError, TypeError) as e:
            raise InvalidInput(f"Invalid version manifest {path}: {e}") from e
        logger.debug(f"Loaded {len(manifest.components)} manifest entries from {path}")
        return manifest

    def save_manifest_digests(self, path: Union[str, Path], digests: Dict[str, str]) -> Path:
        """Write ``digests`` (component -> sha256 hex) back into the manifest file.

        Comments and key order survive; the previous content is kept in a
        ``.bak`` file next to it.
        """
        path = self.resolve_path(path)
        text = self._read_text(path)
        editor = YAML()
        editor.preserve_quotes = True
        editor.indent(mapping=2, sequence=4, offset=2)
        try:
            data = editor.load(text)
        except YAMLError as e:
            raise InvalidInput(f"Cannot parse {path}: {e}") from e
        if not isinstance(data, dict):
            raise InvalidInput(f"Version manifest {path} must be a non-empty mapping")

        entries = data["components"] if isinstance(data.get("components"), dict) else data
        for name, digest in digests.items():
            if not isinstance(entries.get(name), dict):
                raise InvalidInput(f"Component '{name}' is not in version manifest {path}")
            entries[name]["digest"] = f"sha256:{digest}"

        stream = io.StringIO()
        editor.dump(data, stream)
        atomic_write(path.with_name(path.name + ".bak"), text)
        atomic_write(path, stream.getvalue())
        logger.info(f"Updated {len(digests)} digest(s) in {path} (backup: {path.name}.bak)")
        return path

    def load_template(self, path: Optional[Union[str, Path]] = None) -> StackTemplate:
        """Load a custom template, or the built-in one."""
        if path is None:
            return StackTemplate.builtin()
        return StackTemplate.from_file(self.resolve_path(path))

    def _read_text(self, file_path: Path) -> str:
        try:
            return file_path.read_text()
        except OSError as e:
            raise InvalidInput(f"Cannot read {file_path}: {e}") from e

    def _read_yaml(self, file_path: Path) -> Any:
        """Read and parse YAML file."""
        text = self._read_text(file_path)
        try:
            return self.yaml.load(text)
        except YAMLError as e:
            raise InvalidInput(f"Cannot parse {file_path}: {e}") from e
