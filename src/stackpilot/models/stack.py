"""Stack descriptor models."""

from enum import Enum
from typing import Any, Dict, List, Optional, Set
from pydantic import BaseModel, Field


class ValidationStatus(str, Enum):
    """Validation state recorded in the descriptor metadata."""
    PENDING = "PENDING"
    PASSED = "PASSED"


class StackMetadata(BaseModel):
    """Provenance of a generated descriptor."""
    generated_at: str
    generator: str
    template: str = ""
    engine: str = ""
    driver: str = ""
    digest_pinning: bool = True
    validation_status: ValidationStatus = ValidationStatus.PENDING


class ServiceDef(BaseModel):
    """One service of the stack."""
    name: str
    image: str
    profiles: List[str] = Field(default_factory=list)
    definition: Dict[str, Any] = Field(default_factory=dict, description="Remaining compose keys")

    @property
    def has_healthcheck(self) -> bool:
        check = self.definition.get("healthcheck")
        return isinstance(check, dict) and bool(check) and not check.get("disable", False)

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"image": self.image}
        doc.update(self.definition)
        if self.profiles:
            doc["profiles"] = list(self.profiles)
        return doc


class StackSpec(BaseModel):
    """Fully rendered, reference-checked stack descriptor."""
    services: List[ServiceDef] = Field(default_factory=list)
    networks: Dict[str, Any] = Field(default_factory=dict)
    volumes: Dict[str, Any] = Field(default_factory=dict)
    extra: Dict[str, Any] = Field(
        default_factory=dict, description="Other top-level compose keys: name, secrets, configs, x-*"
    )
    profiles: Set[str] = Field(default_factory=set)
    active_profiles: Set[str] = Field(default_factory=set)
    metadata: StackMetadata
    path: Optional[str] = None

    @property
    def service_names(self) -> List[str]:
        return [s.name for s in self.services]

    def get_service(self, name: str) -> Optional[ServiceDef]:
        for service in self.services:
            if service.name == name:
                return service
        return None

    def to_document(self) -> Dict[str, Any]:
        """Compose document, with metadata as an ``x-stackpilot`` extension."""
        doc: Dict[str, Any] = {}
        if "name" in self.extra:
            doc["name"] = self.extra["name"]
        doc["x-stackpilot"] = self.metadata.model_dump(mode="json")
        doc["services"] = {s.name: s.to_document() for s in self.services}
        if self.networks:
            doc["networks"] = self.networks
        if self.volumes:
            doc["volumes"] = self.volumes
        for key, value in self.extra.items():
            doc.setdefault(key, value)
        return doc
