"""Retry policy model."""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


class RetryPolicy(BaseModel):
    """Bounded-attempt backoff nested inside a wall-clock deadline."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=2.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    deadline: float = Field(default=300.0, gt=0, description="Total wall-clock budget in seconds")
    attempt_timeout: Optional[float] = Field(default=None, gt=0, description="Per-attempt subprocess timeout")

    @model_validator(mode="after")
    def check_delays(self):
        """Reject a base delay above the cap."""
        if self.base_delay > self.max_delay:
            raise ValueError(
                f"base_delay ({self.base_delay}) must not exceed max_delay ({self.max_delay})"
            )
        return self

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
