"""Service health models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional
from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    """Observed lifecycle state of one service."""
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    UNHEALTHY = "unhealthy"
    HEALTHY = "healthy"


class ServiceHealthRecord(BaseModel):
    """Point-in-time status of one managed service."""
    name: str
    container_id: Optional[str] = None
    status: HealthStatus = HealthStatus.ABSENT
    last_observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    detail: str = ""


def all_healthy(required: Iterable[str], records: Iterable[ServiceHealthRecord]) -> bool:
    """True iff every required service has a healthy record."""
    by_name: Dict[str, ServiceHealthRecord] = {r.name: r for r in records}
    for name in required:
        record = by_name.get(name)
        if record is None or record.status != HealthStatus.HEALTHY:
            return False
    return True


class HealthReport(BaseModel):
    """Result of a successful wait."""
    records: List[ServiceHealthRecord] = Field(default_factory=list)
    elapsed: float = 0.0
    polls: int = 0
