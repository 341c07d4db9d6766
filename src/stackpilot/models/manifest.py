"""Version manifest models."""

import re
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


DIGEST_RE = re.compile(r"^(?:sha256:)?([0-9a-fA-F]{64})$")
PINNED_REF_RE = re.compile(r"^[^@\s]+@sha256:[0-9a-f]{64}$")


class ImageEntry(BaseModel):
    """Repository, tag and optional content digest of one component."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    repository: str = Field(..., min_length=1)
    tag: str = Field(..., min_length=1)
    digest: Optional[str] = Field(None, description="Bare lower-case sha256 hex")

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v):
        """Reject references that already embed a tag or digest."""
        if "@" in v or any(c.isspace() for c in v):
            raise ValueError(f"Invalid repository: {v!r}")
        last = v.rsplit("/", 1)[-1]
        if ":" in last:
            raise ValueError(f"Repository must not include a tag: {v!r}")
        return v

    @field_validator("tag")
    @classmethod
    def validate_tag(cls, v):
        """Validate tag characters."""
        if "/" in v or "@" in v or ":" in v or any(c.isspace() for c in v):
            raise ValueError(f"Invalid tag: {v!r}")
        return v

    @field_validator("digest", mode="before")
    @classmethod
    def normalize_digest(cls, v):
        """Accept 'sha256:<hex>' or '<hex>' and store bare lower-case hex."""
        if v is None or v == "":
            return None
        match = DIGEST_RE.match(str(v).strip())
        if not match:
            raise ValueError(f"Invalid digest (expected sha256:<64 hex>): {v!r}")
        return match.group(1).lower()

    @property
    def tagged_ref(self) -> str:
        return f"{self.repository}:{self.tag}"

    @property
    def pinned_ref(self) -> Optional[str]:
        if not self.digest:
            return None
        return f"{self.repository}@sha256:{self.digest}"


class VersionManifest(BaseModel):
    """Mapping of logical component name to its image entry."""
    model_config = ConfigDict(frozen=True)

    components: Dict[str, ImageEntry] = Field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Dict[str, Dict]) -> "VersionManifest":
        """Build from a plain ``{name: {repository, tag, digest}}`` mapping."""
        if "components" in data and isinstance(data["components"], dict):
            data = data["components"]
        return cls(components={name: ImageEntry(**dict(spec)) for name, spec in data.items()})

    def get(self, name: str) -> Optional[ImageEntry]:
        return self.components.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self.components


class DigestResolution(BaseModel):
    """Outcome of resolving manifest tags to content digests."""
    resolved: Dict[str, str] = Field(default_factory=dict, description="Component -> bare sha256 hex")
    changed: List[str] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict, description="Component -> reason")
    manifest_path: Optional[str] = None
