"""Engine configuration and run status."""

from enum import Enum

from pydantic import BaseModel, Field


class EngineStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    UPDATED = "updated"


class EngineConfig(BaseModel):
    """Configuration for the placement Engine."""

    history_limit: int = Field(default=1000, ge=0)     # Entries handed to guards per run
    error_log_limit: int = Field(default=50, ge=1)     # Recent run failures kept for inspection
    transition_log_limit: int = Field(default=100, ge=1)
