"""History entries — what actually happened to an item on a surface."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class HistoryEvent(str, Enum):
    SHOWN = "shown"
    DISMISSED = "dismissed"
    EXPIRED = "expired"
    SYSTEM_DISMISSED = "system_dismissed"
    CONVERTED = "converted"


class HistoryEntry(BaseModel):
    """
    One append-only record. Created by the host when content is actually
    shown or dismissed; guards only read these.
    """

    model_config = ConfigDict(frozen=True)

    item_id: str                            # payload id + variant + surface
    payload_id: str
    surface: str
    variant: str
    event: HistoryEvent
    timestamp: datetime
