"""Election participation endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from app.dependencies import get_current_staff, get_current_voter, get_db_client
from app.schemas.participation import ParticipationRequest
from app.services.participation_service import ParticipationService
from supabase import Client

router = APIRouter()


@router.post("/confirm")
def confirm_participation(
    payload: ParticipationRequest,
    voter: dict[str, Any] = Depends(get_current_voter),
    client: Client = Depends(get_db_client),
) -> dict:
    """Confirm the voter's participation in an election."""
    participation = ParticipationService(client).confirm(voter, payload.election_id)
    return {"participation": participation}


@router.post("/withdraw")
def withdraw_participation(
    payload: ParticipationRequest,
    voter: dict[str, Any] = Depends(get_current_voter),
    client: Client = Depends(get_db_client),
) -> dict:
    """Withdraw participation before voting."""
    participation = ParticipationService(client).withdraw(voter, payload.election_id)
    return {"participation": participation}


@router.get("/status/{election_id}")
def get_participation_status(
    election_id: str,
    voter: dict[str, Any] = Depends(get_current_voter),
    client: Client = Depends(get_db_client),
) -> dict:
    """Return whether the voter has confirmed and voted."""
    return ParticipationService(client).status(voter, election_id)


@router.get("/receipt/{election_id}")
def get_voting_receipt(
    election_id: str,
    voter: dict[str, Any] = Depends(get_current_voter),
    client: Client = Depends(get_db_client),
) -> dict:
    """Return the voter's submitted ballots and votes."""
    return {"receipt": ParticipationService(client).receipt(voter, election_id)}


@router.get("/elections/{election_id}/participants")
def list_participants(
    election_id: str,
    status: str | None = Query(default=None),
    has_voted: bool | None = Query(default=None),
    search: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _: Any = Depends(get_current_staff),
    client: Client = Depends(get_db_client),
) -> dict:
    """Return an election's participants with voter details."""
    participants, total = ParticipationService(client).participants(
        election_id,
        status=status,
        has_voted=has_voted,
        search=search,
        limit=limit,
        offset=offset,
    )
    return {"participants": participants, "total": total}


@router.get("/voters/{voter_id}/history")
def get_voter_history(
    voter_id: str,
    _: Any = Depends(get_current_staff),
    client: Client = Depends(get_db_client),
) -> dict:
    """Return the elections a voter has confirmed for."""
    return ParticipationService(client).voter_history(voter_id)
