import enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, enum.Enum):
    OPEN = "open"
    CLICK = "click"
    REPLY = "reply"
    CONVERSION = "conversion"


#  event posting flow


class EventCreateModel(BaseModel):
    """Schema for recording an event (API input)."""

    participant_id: str
    type: EventType
    # Opaque; stored as given
    metadata: Optional[Dict[str, Any]] = None


class EventResponseModel(BaseModel):
    recorded: bool = Field(..., description="False when the participant has no assignment in the test.")
