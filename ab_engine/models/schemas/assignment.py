from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class AssignmentModel(BaseModel):
    """Data model for a persistent participant assignment record."""

    test_id: str
    participant_id: str
    variant_id: str = Field(..., description="The variant the participant was assigned.")
    assigned_at: datetime

    model_config = ConfigDict(from_attributes=True)
