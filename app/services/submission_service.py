"""Vote submission and tallying."""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from collections.abc import Callable
from datetime import datetime
from typing import Any

from app.services.audit_service import AuditService
from app.services.common import SupabaseService
from app.services.roster_service import RosterService
from app.services.timing_service import BALLOT_EXPIRED, BALLOT_SUBMITTED, derive_ballot_status
from app.utils.errors import (
    AlreadySubmittedError,
    BallotWindowClosedError,
    ForbiddenError,
    InvalidInputError,
    NotFoundError,
    ParticipationRequiredError,
    VoteValidationError,
)
from app.utils.time import now_utc, to_iso
from supabase import Client

logger = logging.getLogger(__name__)


class SubmissionService:
    """Validate and record a ballot's votes, and count them per candidate."""

    def __init__(self, client: Client, clock: Callable[[], datetime] | None = None) -> None:
        self.db = SupabaseService(client)
        self.roster = RosterService(client)
        self.audit = AuditService(client)
        self.clock = clock or now_utc

    def submit(
        self,
        voter: dict[str, Any],
        ballot_id: str,
        votes: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Record votes and mark the ballot submitted.

        The vote rows, the ballot status change and the participation
        ``has_voted`` flag are written by one ``submit_ballot`` database
        call, so a failed submission leaves no partial votes behind.
        """
        voter_id = str(voter["id"])
        ballot = self.db.select_one("ballots", {"id": ballot_id}, not_found_label="Ballot")
        if str(ballot["voter_id"]) != voter_id:
            raise ForbiddenError("You can only submit your own ballot")

        now = self.clock()
        status = derive_ballot_status(ballot, now)
        if status == BALLOT_SUBMITTED:
            raise AlreadySubmittedError()
        if status == BALLOT_EXPIRED:
            raise BallotWindowClosedError("Your ballot has expired")

        problems = self.validate_votes(ballot, votes)
        if problems:
            raise VoteValidationError(problems)

        choices = [
            {"position_id": str(vote["position_id"]), "candidate_id": str(vote["candidate_id"])}
            for vote in votes
        ]
        rows = self.db.rpc(
            "submit_ballot",
            {
                "p_ballot_id": ballot_id,
                "p_voter_id": voter_id,
                "p_votes": choices,
                "p_submitted_at": to_iso(now),
            },
        )
        if not rows:
            raise InvalidInputError("Ballot submission failed")
        result = rows[0]
        if not result.get("success"):
            self._raise_for_reason(str(result.get("reason") or ""))

        logger.info("Ballot %s submitted with %s votes", ballot_id, len(choices))
        self.audit.log(
            "VOTE_SUBMITTED",
            voter_id,
            f"Submitted {len(choices)} votes",
            election_id=str(ballot["election_id"]),
            ballot_id=ballot_id,
        )
        return {
            "success": True,
            "ballot_id": ballot_id,
            "submitted_at": result.get("submitted_at") or to_iso(now),
            "vote_count": len(choices),
        }

    def validate_votes(self, ballot: dict[str, Any], votes: list[dict[str, Any]]) -> list[str]:
        """Return every problem with a vote set; empty means valid."""
        if not votes:
            return ["Select at least one candidate before submitting"]

        pairs = [(str(vote["position_id"]), str(vote["candidate_id"])) for vote in votes]
        problems = [
            f"Candidate {candidate_id} was selected more than once"
            for (_, candidate_id), seen in Counter(pairs).items()
            if seen > 1
        ]

        positions = {
            str(row["id"]): row
            for row in self.roster.positions_for_election(
                str(ballot["election_id"]), active_only=False
            )
        }
        candidates = self.roster.candidates_by_id([candidate_id for _, candidate_id in pairs])
        ballot_position = str(ballot["position_id"]) if ballot.get("position_id") else None

        chosen: dict[str, set[str]] = defaultdict(set)
        for position_id, candidate_id in dict.fromkeys(pairs):
            position = positions.get(position_id)
            if position is None:
                problems.append(f"Position {position_id} is not part of this election")
                continue
            name = position.get("position_name") or position_id
            if ballot_position and position_id != ballot_position:
                problems.append(f"{name} is not on this ballot")
                continue
            if not position.get("is_active", True):
                problems.append(f"{name} is no longer open for voting")
                continue

            candidate = candidates.get(candidate_id)
            if candidate is None or str(candidate.get("position_id")) != position_id:
                problems.append(f"Candidate {candidate_id} is not running for {name}")
            elif not candidate.get("is_active", True):
                problems.append(f"Candidate {candidate.get('name')} is no longer active")
            chosen[position_id].add(candidate_id)

        for position_id, selected in chosen.items():
            position = positions[position_id]
            max_votes = int(position.get("max_votes") or 1)
            if len(selected) > max_votes:
                problems.append(
                    f"{position.get('position_name') or position_id} allows at most "
                    f"{max_votes} vote(s), got {len(selected)}"
                )
        return problems

    @staticmethod
    def _raise_for_reason(reason: str) -> None:
        if reason == "ballot_not_found":
            raise NotFoundError("Ballot")
        if reason == "not_owner":
            raise ForbiddenError("You can only submit your own ballot")
        if reason == "already_submitted":
            raise AlreadySubmittedError()
        if reason == "ballot_expired":
            raise BallotWindowClosedError("Your ballot has expired")
        if reason == "participation_required":
            raise ParticipationRequiredError()
        raise InvalidInputError("Ballot submission failed")

    def tally(self, election_id: str, position_id: str | None = None) -> dict[str, Any]:
        """Count votes per candidate; only submitted ballots carry vote rows."""
        election = self.roster.get_election(election_id)
        if position_id:
            position = self.roster.get_position(position_id)
            if str(position.get("election_id")) != str(election["id"]):
                raise NotFoundError("Position")
            positions = [position]
        else:
            positions = self.roster.positions_for_election(election_id, active_only=False)

        filters: dict[str, Any] = {"election_id": election_id}
        if position_id:
            filters["position_id"] = position_id
        votes = self.db.select_many("votes", filters=filters, columns="position_id,candidate_id")
        counts = Counter((str(vote["position_id"]), str(vote["candidate_id"])) for vote in votes)

        results: list[dict[str, Any]] = []
        for position in positions:
            pid = str(position["id"])
            candidates = [
                {
                    "candidate_id": candidate["id"],
                    "candidate_number": candidate.get("candidate_number"),
                    "name": candidate.get("name"),
                    "partylist_name": candidate.get("partylist_name"),
                    "votes": counts[(pid, str(candidate["id"]))],
                }
                for candidate in self.roster.get_candidates_for_position(pid, active_only=False)
            ]
            candidates.sort(key=lambda row: (-row["votes"], row["candidate_number"] or 0))
            results.append(
                {
                    "position": position,
                    "total_votes": sum(row["votes"] for row in candidates),
                    "candidates": candidates,
                }
            )

        return {
            "election": {
                "id": election["id"],
                "title": election["title"],
                "election_type": election["election_type"],
            },
            "results": results,
        }
