"""Ballot request schemas."""

from pydantic import BaseModel, Field, model_validator

from app.services.timing_service import validate_window_config
from app.utils.errors import InvalidInputError


class StartBallotRequest(BaseModel):
    """Request body for starting or resuming a ballot."""

    election_id: str = Field(..., min_length=1)
    position_id: str | None = None


class VoteItem(BaseModel):
    """One selected candidate for one position."""

    position_id: str = Field(..., min_length=1)
    candidate_id: str = Field(..., min_length=1)


class SubmitBallotRequest(BaseModel):
    """Request body for submitting a ballot."""

    votes: list[VoteItem] = Field(default_factory=list)


class TimerExtensionRequest(BaseModel):
    """Request body for extending an in-progress ballot's deadline."""

    additional_minutes: int = Field(..., ge=1)


class PositionTimingUpdate(BaseModel):
    """Per-position ballot window for departmental elections (HH:MM, 24-hour)."""

    ballot_open_time: str | None = None
    ballot_close_time: str | None = None

    @model_validator(mode="after")
    def check_window(self) -> "PositionTimingUpdate":
        try:
            validate_window_config(self.ballot_open_time, self.ballot_close_time)
        except InvalidInputError as exc:
            raise ValueError(exc.message) from exc
        return self


class YearRestrictionUpdate(BaseModel):
    """Year levels allowed to vote for a departmental position; empty lifts it."""

    allowed_year_levels: list[int] = Field(default_factory=list, max_length=6)

    @model_validator(mode="after")
    def check_levels(self) -> "YearRestrictionUpdate":
        for level in self.allowed_year_levels:
            if not 1 <= level <= 6:
                raise ValueError(f"Year level must be between 1 and 6, got {level}")
        return self
