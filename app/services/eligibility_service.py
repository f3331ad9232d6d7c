"""Voter eligibility rules for elections and departmental positions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.services.common import SupabaseService
from app.services.timing_service import BALLOT_SUBMITTED, ELECTION_DEPARTMENTAL
from app.utils.errors import VoterIneligibleError
from supabase import Client


@dataclass(frozen=True)
class EligibilityResult:
    """Outcome of an eligibility check; ineligibility is a normal result."""

    can_vote: bool
    reason: str | None = None
    code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"can_vote": self.can_vote, "message": self.reason, "code": self.code}


ELIGIBLE = EligibilityResult(can_vote=True)


def _deny(code: str, reason: str) -> EligibilityResult:
    return EligibilityResult(can_vote=False, reason=reason, code=code)


def evaluate_eligibility(
    voter: dict[str, Any],
    election: dict[str, Any],
    position: dict[str, Any] | None = None,
    participation: dict[str, Any] | None = None,
    submitted_ballot: dict[str, Any] | None = None,
    check_voted: bool = True,
) -> EligibilityResult:
    """Apply eligibility rules in order; the first failing rule wins."""
    if not voter.get("is_registered"):
        return _deny("NOT_REGISTERED", "You are not registered to vote")
    if not voter.get("is_active", True):
        return _deny("INACTIVE", "Your voter account is inactive")

    departmental = election.get("election_type") == ELECTION_DEPARTMENTAL
    if departmental and str(voter.get("department_id")) != str(election.get("department_id")):
        return _deny("WRONG_DEPARTMENT", "This election is for another department")

    if check_voted:
        if submitted_ballot is not None:
            return _deny("ALREADY_VOTED", "You have already voted")
        if position is None and participation and participation.get("has_voted"):
            return _deny("ALREADY_VOTED", "You have already voted in this election")

    if departmental:
        if election.get("officers_only") and not voter.get("is_class_officer"):
            return _deny("NOT_CLASS_OFFICER", "Only class officers can vote in this election")
        allowed_levels = (position or {}).get("allowed_year_levels") or []
        if allowed_levels and str(voter.get("year_level")) not in {str(v) for v in allowed_levels}:
            return _deny("YEAR_LEVEL_RESTRICTED", "Your year level cannot vote for this position")

    return ELIGIBLE


def ballot_scope_filters(
    voter_id: str,
    election_id: str,
    position_id: str | None,
) -> dict[str, Any]:
    """Filters selecting a voter's ballots in one scope."""
    return {
        "voter_id": voter_id,
        "election_id": election_id,
        "position_id": position_id,
    }


class EligibilityService:
    """Load the records eligibility depends on and evaluate the rules."""

    def __init__(self, client: Client) -> None:
        self.db = SupabaseService(client)

    def participation_for(self, voter_id: str, election_id: str) -> dict[str, Any] | None:
        """Return the voter's participation record for an election, if any."""
        return self.db.select_first(
            "election_participations",
            {"voter_id": voter_id, "election_id": election_id},
        )

    def submitted_ballot_for(
        self,
        voter_id: str,
        election_id: str,
        position_id: str | None,
    ) -> dict[str, Any] | None:
        """Return the voter's submitted ballot in a scope, if any."""
        filters = ballot_scope_filters(voter_id, election_id, position_id)
        filters["ballot_status"] = BALLOT_SUBMITTED
        return self.db.select_first("ballots", filters)

    def can_vote(
        self,
        voter: dict[str, Any],
        election: dict[str, Any],
        position: dict[str, Any] | None = None,
    ) -> EligibilityResult:
        """Return whether the voter may vote in the election (or position)."""
        position_id = str(position["id"]) if position else None
        return evaluate_eligibility(
            voter,
            election,
            position,
            participation=self.participation_for(str(voter["id"]), str(election["id"])),
            submitted_ballot=self.submitted_ballot_for(
                str(voter["id"]), str(election["id"]), position_id
            ),
        )

    @staticmethod
    def ensure_can_vote(
        voter: dict[str, Any],
        election: dict[str, Any],
        position: dict[str, Any] | None = None,
    ) -> None:
        """Raise VoterIneligibleError when a standing rule fails.

        Already-voted is not checked here; issuance hands submitted ballots
        back instead of refusing them.
        """
        result = evaluate_eligibility(voter, election, position, check_voted=False)
        if not result.can_vote:
            raise VoterIneligibleError(result.reason or "You are not eligible to vote")
