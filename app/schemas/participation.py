"""Election participation schemas."""

from pydantic import BaseModel, Field


class ParticipationRequest(BaseModel):
    """Request body for confirming or withdrawing participation."""

    election_id: str = Field(..., min_length=1)
