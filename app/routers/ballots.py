"""Ballot endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from app.dependencies import (
    get_current_staff,
    get_current_user_id,
    get_current_voter,
    get_db_client,
)
from app.schemas.ballot import (
    PositionTimingUpdate,
    StartBallotRequest,
    SubmitBallotRequest,
    TimerExtensionRequest,
    YearRestrictionUpdate,
)
from app.services.ballot_service import BallotService
from app.services.roster_service import RosterService
from app.services.submission_service import SubmissionService
from supabase import Client

router = APIRouter()


@router.get("/status/{election_id}")
def get_ballot_status(
    election_id: str,
    position_id: str | None = None,
    voter: dict[str, Any] = Depends(get_current_voter),
    client: Client = Depends(get_db_client),
) -> dict:
    """Return whether the voter has voted and can vote in a scope."""
    return BallotService(client).ballot_status(voter, election_id, position_id)


@router.post("/start")
def start_ballot(
    payload: StartBallotRequest,
    voter: dict[str, Any] = Depends(get_current_voter),
    client: Client = Depends(get_db_client),
) -> dict:
    """Start a ballot, or return the voter's existing one for the scope."""
    return BallotService(client).start_or_resume(voter, payload.election_id, payload.position_id)


@router.get("/preview/{election_id}")
def preview_ballot(
    election_id: str,
    position_id: str | None = None,
    _: dict[str, Any] = Depends(get_current_voter),
    client: Client = Depends(get_db_client),
) -> dict:
    """Return positions and candidates as they appear on the ballot."""
    return {"positions": RosterService(client).preview(election_id, position_id)}


@router.get("/departmental/{election_id}/available-positions")
def get_available_positions(
    election_id: str,
    voter: dict[str, Any] = Depends(get_current_voter),
    client: Client = Depends(get_db_client),
) -> dict:
    """List a departmental election's positions with the voter's state."""
    return BallotService(client).available_positions(voter, election_id)


@router.post("/{ballot_id}/submit")
def submit_ballot(
    ballot_id: str,
    payload: SubmitBallotRequest,
    voter: dict[str, Any] = Depends(get_current_voter),
    client: Client = Depends(get_db_client),
) -> dict:
    """Submit the voter's selections."""
    votes = [vote.model_dump() for vote in payload.votes]
    return SubmissionService(client).submit(voter, ballot_id, votes)


@router.get("/{ballot_id}/votes")
def get_ballot_votes(
    ballot_id: str,
    voter: dict[str, Any] = Depends(get_current_voter),
    client: Client = Depends(get_db_client),
) -> dict:
    """Return one of the voter's ballots with its votes."""
    return BallotService(client).ballot_votes(voter, ballot_id)


@router.get("/elections/{election_id}/statistics")
def get_ballot_statistics(
    election_id: str,
    position_id: str | None = None,
    _: Any = Depends(get_current_staff),
    client: Client = Depends(get_db_client),
) -> dict:
    """Return ballot counts and turnout for an election."""
    return {"statistics": BallotService(client).statistics(election_id, position_id)}


@router.get("/elections/{election_id}/results")
def get_election_results(
    election_id: str,
    position_id: str | None = None,
    _: Any = Depends(get_current_staff),
    client: Client = Depends(get_db_client),
) -> dict:
    """Return vote counts per candidate."""
    return SubmissionService(client).tally(election_id, position_id)


@router.put("/{ballot_id}/timer")
def extend_ballot_timer(
    ballot_id: str,
    payload: TimerExtensionRequest,
    staff: Any = Depends(get_current_staff),
    client: Client = Depends(get_db_client),
) -> dict:
    """Extend an in-progress ballot's deadline."""
    ballot = BallotService(client).extend_timer(
        ballot_id,
        payload.additional_minutes,
        actor_id=get_current_user_id(staff),
    )
    return {"ballot": ballot}


@router.put("/departmental/positions/{position_id}/timing")
def update_position_timing(
    position_id: str,
    payload: PositionTimingUpdate,
    _: Any = Depends(get_current_staff),
    client: Client = Depends(get_db_client),
) -> dict:
    """Set a departmental position's own ballot window."""
    return BallotService(client).update_position_timing(
        position_id,
        payload.ballot_open_time,
        payload.ballot_close_time,
    )


@router.put("/departmental/positions/{position_id}/year-restriction")
def update_year_restriction(
    position_id: str,
    payload: YearRestrictionUpdate,
    _: Any = Depends(get_current_staff),
    client: Client = Depends(get_db_client),
) -> dict:
    """Limit a departmental position to some year levels."""
    return BallotService(client).update_year_restriction(position_id, payload.allowed_year_levels)


@router.get("/elections/{election_id}/ballots")
def list_election_ballots(
    election_id: str,
    position_id: str | None = None,
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _: Any = Depends(get_current_staff),
    client: Client = Depends(get_db_client),
) -> dict:
    """Return an election's ballots for committee review."""
    ballots, total = BallotService(client).list_ballots(
        election_id,
        position_id=position_id,
        status=status,
        limit=limit,
        offset=offset,
    )
    return {"ballots": ballots, "total": total}


@router.delete("/{ballot_id}")
def delete_ballot(
    ballot_id: str,
    staff: Any = Depends(get_current_staff),
    client: Client = Depends(get_db_client),
) -> dict:
    """Remove a ballot and its votes."""
    return BallotService(client).delete_ballot(ballot_id, actor_id=get_current_user_id(staff))
