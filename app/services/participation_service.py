"""Election participation confirmation, withdrawal and receipts."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from app.config import settings
from app.services.audit_service import AuditService
from app.services.common import SupabaseService, voter_display_name
from app.services.eligibility_service import EligibilityService, evaluate_eligibility
from app.services.roster_service import RosterService
from app.services.timing_service import (
    BALLOT_SUBMITTED,
    ELECTION_DEPARTMENTAL,
    OPEN,
    SCHEDULED,
    present_election,
    scope_window,
)
from app.utils.errors import (
    ConflictError,
    ElectionNotOpenForParticipationError,
    InvalidInputError,
    NotFoundError,
    ParticipationRequiredError,
    VoterIneligibleError,
)
from app.utils.time import get_zone, now_utc, to_iso
from supabase import Client

PARTICIPATION_CONFIRMED = "confirmed"
PARTICIPATION_WITHDRAWN = "withdrawn"

logger = logging.getLogger(__name__)


class ParticipationService:
    """One-time voter opt-in per election; a precondition for ballots."""

    def __init__(self, client: Client, clock: Callable[[], datetime] | None = None) -> None:
        self.db = SupabaseService(client)
        self.roster = RosterService(client)
        self.eligibility = EligibilityService(client)
        self.audit = AuditService(client)
        self.clock = clock or now_utc
        self.tz = get_zone(settings.timezone)

    def _accepting(self, election: dict[str, Any]) -> bool:
        """Whether any ballot window of the election is still scheduled or open.

        Departmental positions can close after the election window, so their
        own windows count too.
        """
        now = self.clock()
        live = {SCHEDULED, OPEN}
        if scope_window(election, None, now, self.tz).phase in live:
            return True
        if election.get("election_type") != ELECTION_DEPARTMENTAL:
            return False
        return any(
            scope_window(election, position, now, self.tz).phase in live
            for position in self.roster.positions_for_election(str(election["id"]))
        )

    def confirm(self, voter: dict[str, Any], election_id: str) -> dict[str, Any]:
        """Confirm participation; confirming again returns the existing record."""
        election = self.roster.get_election(election_id)
        voter_id = str(voter["id"])

        if election.get("status") in {"draft", "cancelled"} or not self._accepting(election):
            raise ElectionNotOpenForParticipationError()

        result = evaluate_eligibility(voter, election, check_voted=False)
        if not result.can_vote:
            raise VoterIneligibleError(result.reason or "Voter is not eligible to participate")

        existing = self.eligibility.participation_for(voter_id, election_id)
        if existing:
            if existing.get("status") != PARTICIPATION_WITHDRAWN:
                return existing
            rows = self.db.update(
                "election_participations",
                {"id": existing["id"], "status": PARTICIPATION_WITHDRAWN},
                {"status": PARTICIPATION_CONFIRMED, "confirmed_at": to_iso(self.clock())},
            )
            record = rows[0] if rows else self.eligibility.participation_for(voter_id, election_id)
            self.audit.log(
                "ELECTION_PARTICIPATION",
                voter_id,
                f"Reconfirmed participation in election: {election['title']}",
                election_id=election_id,
            )
            return record

        try:
            record = self.db.insert_one(
                "election_participations",
                {
                    "voter_id": voter_id,
                    "election_id": election_id,
                    "status": PARTICIPATION_CONFIRMED,
                    "has_voted": False,
                    "confirmed_at": to_iso(self.clock()),
                },
            )
        except ConflictError:
            # A concurrent confirm won the unique (voter, election) race.
            existing = self.eligibility.participation_for(voter_id, election_id)
            if existing is None:
                raise
            return existing

        logger.info("Voter %s confirmed participation in election %s", voter_id, election_id)
        self.audit.log(
            "ELECTION_PARTICIPATION",
            voter_id,
            f"Confirmed participation in election: {election['title']}",
            election_id=election_id,
        )
        return record

    def withdraw(self, voter: dict[str, Any], election_id: str) -> dict[str, Any]:
        """Withdraw a confirmed participation that has not voted yet."""
        voter_id = str(voter["id"])
        existing = self.eligibility.participation_for(voter_id, election_id)
        if not existing or existing.get("status") == PARTICIPATION_WITHDRAWN:
            raise NotFoundError("Participation")
        if existing.get("has_voted"):
            raise ConflictError("You have already voted in this election", code="ALREADY_VOTED")

        rows = self.db.update(
            "election_participations",
            {"id": existing["id"], "has_voted": False},
            {"status": PARTICIPATION_WITHDRAWN},
        )
        if not rows:
            raise ConflictError("You have already voted in this election", code="ALREADY_VOTED")

        self.audit.log(
            "PARTICIPATION_WITHDRAWN",
            voter_id,
            "Withdrew participation",
            election_id=election_id,
        )
        return rows[0]

    def status(self, voter: dict[str, Any], election_id: str) -> dict[str, Any]:
        """Return whether the voter has confirmed and whether they have voted."""
        self.roster.get_election(election_id)
        record = self.eligibility.participation_for(str(voter["id"]), election_id)
        confirmed = bool(record and record.get("status") == PARTICIPATION_CONFIRMED)
        return {
            "has_participated": confirmed,
            "has_voted": bool(record and record.get("has_voted")),
            "participation": record,
        }

    def require_confirmed(self, voter_id: str, election_id: str) -> dict[str, Any]:
        """Return the confirmed participation or raise ParticipationRequiredError."""
        record = self.eligibility.participation_for(voter_id, election_id)
        if not record or record.get("status") != PARTICIPATION_CONFIRMED:
            raise ParticipationRequiredError()
        return record

    def receipt(self, voter: dict[str, Any], election_id: str) -> dict[str, Any]:
        """Return the voter's submitted ballots and votes for an election."""
        election = self.roster.get_election(election_id)
        voter_id = str(voter["id"])
        record = self.eligibility.participation_for(voter_id, election_id)
        if not record or not record.get("has_voted"):
            raise NotFoundError("Voting receipt")

        ballots = self.db.select_many(
            "ballots",
            filters={
                "voter_id": voter_id,
                "election_id": election_id,
                "ballot_status": BALLOT_SUBMITTED,
            },
            order_by="submitted_at",
        )
        ballot_ids = [str(ballot["id"]) for ballot in ballots]
        votes = (
            self.db.select_many("votes", filters={"ballot_id": ballot_ids}) if ballot_ids else []
        )
        described = self.roster.describe_votes(votes)

        return {
            "election": {
                "id": election["id"],
                "title": election["title"],
                "election_type": election["election_type"],
            },
            "participation": record,
            "ballots": [
                {
                    "ballot_id": ballot["id"],
                    "ballot_token": ballot.get("ballot_token"),
                    "position_id": ballot.get("position_id"),
                    "submitted_at": ballot.get("submitted_at"),
                    "votes": [
                        vote for vote in described if str(vote["ballot_id"]) == str(ballot["id"])
                    ],
                }
                for ballot in ballots
            ],
        }

    def participants(
        self,
        election_id: str,
        status: str | None = None,
        has_voted: bool | None = None,
        search: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """Return an election's participation records with voter details.

        ``search`` matches a voter's first or last name (case-insensitive) or
        their exact school id.
        """
        self.roster.get_election(election_id)
        filters: dict[str, Any] = {"election_id": election_id}
        if status:
            if status not in {PARTICIPATION_CONFIRMED, PARTICIPATION_WITHDRAWN}:
                raise InvalidInputError(f"Unknown participation status filter: {status}")
            filters["status"] = status
        if has_voted is not None:
            filters["has_voted"] = has_voted

        records = self.db.select_many(
            "election_participations",
            filters=filters,
            order_by="confirmed_at",
            descending=True,
        )
        voters = self.db.get_voters_map(str(row["voter_id"]) for row in records)

        needle = (search or "").strip().lower()
        matched: list[dict[str, Any]] = []
        for record in records:
            voter = voters.get(str(record["voter_id"])) or {}
            if needle and not (
                needle in str(voter.get("first_name") or "").lower()
                or needle in str(voter.get("last_name") or "").lower()
                or needle == str(voter.get("school_id") or "").lower()
            ):
                continue
            matched.append(
                {
                    **record,
                    "voter_name": voter_display_name(voter) if voter else None,
                    "school_id": voter.get("school_id"),
                }
            )
        return matched[offset : offset + limit], len(matched)

    def voter_history(self, voter_id: str) -> dict[str, Any]:
        """Return every election a voter confirmed for, newest first."""
        voter = self.db.select_one(
            "voters",
            {"id": voter_id},
            columns="id,school_id,first_name,middle_name,last_name",
            not_found_label="Voter",
        )
        records = self.db.select_many(
            "election_participations",
            filters={"voter_id": voter_id},
            order_by="confirmed_at",
            descending=True,
        )
        election_ids = sorted({str(row["election_id"]) for row in records})
        elections = (
            {
                str(row["id"]): row
                for row in self.db.select_many("elections", filters={"id": election_ids})
            }
            if election_ids
            else {}
        )

        now = self.clock()
        history: list[dict[str, Any]] = []
        for record in records:
            election = elections.get(str(record["election_id"]))
            summary = None
            if election:
                presented = present_election(election, now, self.tz)
                summary = {
                    key: presented.get(key)
                    for key in ("id", "title", "election_type", "election_date", "status")
                }
            history.append({**record, "election": summary})

        return {
            "voter_id": voter["id"],
            "voter_name": voter_display_name(voter),
            "school_id": voter.get("school_id"),
            "participation_history": history,
        }
