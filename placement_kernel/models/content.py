"""Promotable content — payloads, their per-surface options, and resolved items."""

from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from placement_kernel.models.conditions import Condition


class Option(BaseModel):
    """Presentation policy for one (surface, variant) pair."""

    model_config = ConfigDict(frozen=True)

    surface: str                            # e.g., "home_top_banner", "popup"
    variant: str                            # e.g., "banner", "dialog", "fullscreen"
    stage: Optional[int] = None             # Ordinal in a multi-step reveal
    max_impressions: Optional[int] = Field(default=None, ge=0)
    cooldown_minutes: Optional[int] = Field(default=None, ge=0)
    is_dismissible: bool = True
    always_on_if_eligible: bool = False


class Payload(BaseModel):
    """Content envelope produced by the content source."""

    model_config = ConfigDict(frozen=True)

    id: str
    priority: int = 0                       # Higher is preferred
    metadata: Dict[str, Any] = {}
    options: List[Option] = []
    eligibility: Optional[Condition] = None


class Item(BaseModel):
    """
    A schedulable unit: one payload bound to one of its options.

    Identity is payload id + surface + variant, so the same payload may sit
    on several surfaces at once.
    """

    model_config = ConfigDict(frozen=True)

    payload: Payload
    option: Option

    @property
    def id(self) -> str:
        return f"{self.payload.id}::{self.option.variant}::{self.option.surface}"

    @property
    def payload_id(self) -> str:
        return self.payload.id

    @property
    def surface(self) -> str:
        return self.option.surface

    @property
    def variant(self) -> str:
        return self.option.variant

    @property
    def priority(self) -> int:
        return self.payload.priority

    @property
    def stage(self) -> Optional[int]:
        return self.option.stage

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.payload.metadata

    def __repr__(self) -> str:
        return f"Item({self.id}, priority={self.priority})"


def materialize(payloads: Iterable[Payload]) -> List[Item]:
    """Expand payloads into one candidate item per option."""
    return [
        Item(payload=payload, option=option)
        for payload in payloads
        for option in payload.options
    ]
