"""Ballot issuance and lifecycle.

A ballot belongs to one voter and one scope: a whole SSG election, or one
position of a departmental election. Its lifecycle is

    absent -> in_progress -> submitted
                          -> expired (deleted, then reissued while the window is open)

At most one live (in_progress or submitted) ballot exists per voter and scope.
That is enforced by a partial unique index, so concurrent issuance attempts
collide on insert and are retried until they collapse onto the same ballot.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from app.config import settings
from app.services.audit_service import AuditService
from app.services.common import SupabaseService, voter_display_name
from app.services.eligibility_service import (
    EligibilityService,
    ballot_scope_filters,
    evaluate_eligibility,
)
from app.services.participation_service import PARTICIPATION_CONFIRMED, ParticipationService
from app.services.roster_service import RosterService
from app.services.timing_service import (
    BALLOT_EXPIRED,
    BALLOT_IN_PROGRESS,
    BALLOT_SUBMITTED,
    ELECTION_DEPARTMENTAL,
    OPEN,
    SCHEDULED,
    ballot_deadline,
    derive_ballot_status,
    present_election,
    scope_window,
    seconds_remaining,
    validate_window_config,
)
from app.utils.errors import (
    BallotIssueConflictError,
    BallotNotYetOpenError,
    BallotWindowClosedError,
    ConflictError,
    ForbiddenError,
    InvalidInputError,
)
from app.utils.time import get_zone, now_utc, parse_timestamp, to_iso
from supabase import Client

OUTCOME_CREATED = "created"
OUTCOME_RESUMED = "resumed"
OUTCOME_REISSUED = "reissued"
OUTCOME_SUBMITTED = "submitted"

LIVE_STATUSES = [BALLOT_IN_PROGRESS, BALLOT_SUBMITTED]

logger = logging.getLogger(__name__)


def present_ballot(ballot: dict[str, Any], now: datetime) -> dict[str, Any]:
    """Return a ballot with its status re-derived from the clock."""
    payload = dict(ballot)
    status = derive_ballot_status(ballot, now)
    payload["ballot_status"] = status
    payload["is_submitted"] = status == BALLOT_SUBMITTED
    payload["is_expired"] = status == BALLOT_EXPIRED
    payload["seconds_remaining"] = seconds_remaining(ballot, now)
    return payload


class BallotService:
    """Start, resume, reissue and inspect voter ballots."""

    def __init__(
        self,
        client: Client,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = SupabaseService(client)
        self.roster = RosterService(client)
        self.eligibility = EligibilityService(client)
        self.participation = ParticipationService(client, clock=clock)
        self.audit = AuditService(client)
        self.clock = clock or now_utc
        self.sleep = sleep
        self.tz = get_zone(settings.timezone)

    def live_ballot(
        self,
        voter_id: str,
        election_id: str,
        position_id: str | None,
    ) -> dict[str, Any] | None:
        """Return the voter's in-progress or submitted ballot for a scope."""
        filters = ballot_scope_filters(voter_id, election_id, position_id)
        filters["ballot_status"] = LIVE_STATUSES
        rows = self.db.select_many("ballots", filters=filters, order_by="created_at")
        for row in rows:
            if row.get("ballot_status") == BALLOT_SUBMITTED:
                return row
        return rows[0] if rows else None

    def start_or_resume(
        self,
        voter: dict[str, Any],
        election_id: str,
        position_id: str | None = None,
    ) -> dict[str, Any]:
        """Return the voter's usable ballot for a scope, creating it if needed.

        Raises:
            VoterIneligibleError: a standing eligibility rule fails.
            ParticipationRequiredError: participation is not confirmed.
            BallotNotYetOpenError: the window has not opened.
            BallotWindowClosedError: the window has closed.
            BallotIssueConflictError: concurrent inserts kept colliding.
        """
        election, position = self.roster.resolve_scope(election_id, position_id)
        voter_id = str(voter["id"])
        self.eligibility.ensure_can_vote(voter, election, position)
        self.participation.require_confirmed(voter_id, str(election["id"]))

        max_retries = max(0, settings.ballot_issue_max_retries)
        delay_seconds = max(0, settings.ballot_issue_retry_delay_ms) / 1000
        for attempt in range(max_retries + 1):
            try:
                return self._issue_once(voter_id, election, position)
            except ConflictError as exc:
                if exc.code != "UNIQUE_VIOLATION":
                    raise
                if attempt >= max_retries:
                    logger.error(
                        "Ballot issue for voter %s in election %s still conflicting after %s retries",
                        voter_id,
                        election_id,
                        max_retries,
                    )
                    raise BallotIssueConflictError() from exc
                logger.warning(
                    "Ballot issue conflict for voter %s in election %s, retry %s/%s",
                    voter_id,
                    election_id,
                    attempt + 1,
                    max_retries,
                )
                if delay_seconds:
                    self.sleep(delay_seconds * (attempt + 1))
        raise BallotIssueConflictError()

    def _issue_once(
        self,
        voter_id: str,
        election: dict[str, Any],
        position: dict[str, Any] | None,
    ) -> dict[str, Any]:
        now = self.clock()
        election_id = str(election["id"])
        position_id = str(position["id"]) if position else None

        outcome = OUTCOME_CREATED
        existing = self.live_ballot(voter_id, election_id, position_id)
        if existing:
            status = derive_ballot_status(existing, now)
            if status == BALLOT_SUBMITTED:
                return {"ballot": present_ballot(existing, now), "outcome": OUTCOME_SUBMITTED}
            if status == BALLOT_IN_PROGRESS:
                self.audit.log(
                    "BALLOT_RESUMED",
                    voter_id,
                    f"Resumed ballot for election: {election['title']}",
                    election_id=election_id,
                    ballot_id=str(existing["id"]),
                )
                return {"ballot": present_ballot(existing, now), "outcome": OUTCOME_RESUMED}

            self.db.delete(
                "ballots",
                {"id": existing["id"], "ballot_status": BALLOT_IN_PROGRESS},
            )
            logger.info("Discarded expired ballot %s for voter %s", existing["id"], voter_id)
            outcome = OUTCOME_REISSUED

        window = scope_window(election, position, now, self.tz)
        if window.phase == SCHEDULED:
            raise BallotNotYetOpenError(f"Voting opens at {window.opens_at.isoformat()}")
        if window.phase != OPEN:
            if outcome == OUTCOME_REISSUED:
                raise BallotWindowClosedError("Your ballot has expired and voting is closed")
            raise BallotWindowClosedError()

        deadline = ballot_deadline(window, now, election.get("ballot_duration_minutes"))
        ballot = self.db.insert_one(
            "ballots",
            {
                "voter_id": voter_id,
                "election_id": election_id,
                "position_id": position_id,
                "ballot_status": BALLOT_IN_PROGRESS,
                "ballot_token": secrets.token_hex(32),
                "ballot_open_time": to_iso(now),
                "ballot_close_time": to_iso(deadline),
            },
        )
        logger.info(
            "Issued ballot %s (%s) for voter %s, closes %s",
            ballot["id"],
            outcome,
            voter_id,
            ballot["ballot_close_time"],
        )
        self.audit.log(
            "BALLOT_REISSUED" if outcome == OUTCOME_REISSUED else "BALLOT_STARTED",
            voter_id,
            f"Started ballot for election: {election['title']}",
            election_id=election_id,
            ballot_id=str(ballot["id"]),
        )
        return {"ballot": present_ballot(ballot, now), "outcome": outcome}

    def ballot_status(
        self,
        voter: dict[str, Any],
        election_id: str,
        position_id: str | None = None,
    ) -> dict[str, Any]:
        """Describe the voter's ballot state for a scope without changing it."""
        election, position = self.roster.resolve_scope(election_id, position_id)
        now = self.clock()
        voter_id = str(voter["id"])
        scope_position_id = str(position["id"]) if position else None

        participation = self.eligibility.participation_for(voter_id, str(election["id"]))
        ballot = self.live_ballot(voter_id, str(election["id"]), scope_position_id)
        submitted = ballot if ballot and ballot.get("ballot_status") == BALLOT_SUBMITTED else None
        eligibility = self.eligibility.can_vote(voter, election, position)
        has_voted = submitted is not None or (
            position is None and bool(participation and participation.get("has_voted"))
        )

        return {
            "has_voted": has_voted,
            "can_vote": eligibility.can_vote,
            "has_participated": bool(
                participation and participation.get("status") == PARTICIPATION_CONFIRMED
            ),
            "ballot": present_ballot(ballot, now) if ballot else None,
            "voter_eligibility": eligibility.to_dict(),
            "election": present_election(election, now, self.tz),
            "position": position,
            "window": scope_window(election, position, now, self.tz).to_dict(),
        }

    def available_positions(self, voter: dict[str, Any], election_id: str) -> dict[str, Any]:
        """List a departmental election's positions with the voter's state for each."""
        election = self.roster.get_election(election_id)
        if election["election_type"] != ELECTION_DEPARTMENTAL:
            raise InvalidInputError("Only departmental elections are voted per position")

        now = self.clock()
        voter_id = str(voter["id"])
        participation = self.eligibility.participation_for(voter_id, election_id)
        submitted = {
            str(row["position_id"]): row
            for row in self.db.select_many(
                "ballots",
                filters={
                    "voter_id": voter_id,
                    "election_id": election_id,
                    "ballot_status": BALLOT_SUBMITTED,
                },
            )
        }

        positions: list[dict[str, Any]] = []
        for position in self.roster.positions_for_election(election_id):
            submitted_ballot = submitted.get(str(position["id"]))
            eligibility = evaluate_eligibility(
                voter,
                election,
                position,
                participation=participation,
                submitted_ballot=submitted_ballot,
            )
            positions.append(
                {
                    "position": position,
                    "window": scope_window(election, position, now, self.tz).to_dict(),
                    "has_voted": submitted_ballot is not None,
                    "can_vote": eligibility.can_vote,
                    "reason": eligibility.reason,
                }
            )

        return {
            "election": present_election(election, now, self.tz),
            "positions": positions,
            "total_positions": len(positions),
            "voted_positions": sum(1 for item in positions if item["has_voted"]),
        }

    def ballot_votes(self, voter: dict[str, Any], ballot_id: str) -> dict[str, Any]:
        """Return one of the voter's own ballots with its recorded votes."""
        ballot = self.db.select_one("ballots", {"id": ballot_id}, not_found_label="Ballot")
        if str(ballot["voter_id"]) != str(voter["id"]):
            raise ForbiddenError("Access denied")
        votes = self.db.select_many("votes", filters={"ballot_id": ballot_id})
        return {
            "ballot": present_ballot(ballot, self.clock()),
            "votes": self.roster.describe_votes(votes),
        }

    def extend_timer(
        self,
        ballot_id: str,
        additional_minutes: int,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        """Move an in-progress ballot's deadline later."""
        limit = settings.max_timer_extension_minutes
        if not 1 <= additional_minutes <= limit:
            raise InvalidInputError(f"Timer extension must be between 1 and {limit} minutes")

        now = self.clock()
        ballot = self.db.select_one("ballots", {"id": ballot_id}, not_found_label="Ballot")
        if derive_ballot_status(ballot, now) != BALLOT_IN_PROGRESS:
            raise ConflictError("Only in-progress ballots can be extended", code="BALLOT_NOT_ACTIVE")

        closes_at = parse_timestamp(ballot["ballot_close_time"])
        new_close = closes_at + timedelta(minutes=additional_minutes)
        rows = self.db.update(
            "ballots",
            {"id": ballot_id, "ballot_status": BALLOT_IN_PROGRESS},
            {"ballot_close_time": to_iso(new_close)},
        )
        if not rows:
            raise ConflictError("Only in-progress ballots can be extended", code="BALLOT_NOT_ACTIVE")

        self.audit.log(
            "BALLOT_TIMER_EXTENDED",
            str(ballot["voter_id"]),
            f"Extended by {additional_minutes} minutes by {actor_id or 'staff'}",
            election_id=str(ballot["election_id"]),
            ballot_id=ballot_id,
        )
        return present_ballot(rows[0], now)

    def extend_open_ballots(
        self,
        election_id: str,
        position_id: str | None,
        new_close: datetime,
    ) -> int:
        """Move unexpired in-progress ballots of a scope out to ``new_close``.

        Only deadlines earlier than ``new_close`` are touched, so a deadline
        is never moved earlier.
        """
        now_iso = to_iso(self.clock())
        close_iso = to_iso(new_close)
        query = (
            self.db.client.table("ballots")
            .update({"ballot_close_time": close_iso})
            .eq("election_id", election_id)
            .eq("ballot_status", BALLOT_IN_PROGRESS)
            .gt("ballot_close_time", now_iso)
            .lt("ballot_close_time", close_iso)
        )
        if position_id:
            query = query.eq("position_id", position_id)
        else:
            query = query.is_("position_id", "null")
        rows = self.db.execute(query, default=[])
        if rows:
            logger.info("Extended %s open ballots in election %s", len(rows), election_id)
        return len(rows)

    def update_position_timing(
        self,
        position_id: str,
        ballot_open_time: str | None,
        ballot_close_time: str | None,
    ) -> dict[str, Any]:
        """Change a departmental position's window and extend its live ballots."""
        position = self.roster.get_position(position_id)
        election = self.roster.get_election(str(position["election_id"]))
        if election["election_type"] != ELECTION_DEPARTMENTAL:
            raise InvalidInputError("Only departmental positions have their own ballot timing")

        validate_window_config(
            ballot_open_time or election.get("ballot_open_time"),
            ballot_close_time or election.get("ballot_close_time"),
        )
        rows = self.db.update(
            "positions",
            {"id": position_id},
            {"ballot_open_time": ballot_open_time, "ballot_close_time": ballot_close_time},
        )
        updated = rows[0] if rows else {
            **position,
            "ballot_open_time": ballot_open_time,
            "ballot_close_time": ballot_close_time,
        }

        window = scope_window(election, updated, self.clock(), self.tz)
        extended = 0
        if window.closes_at is not None:
            extended = self.extend_open_ballots(str(election["id"]), position_id, window.closes_at)
        return {"position": updated, "window": window.to_dict(), "extended_ballots": extended}

    def statistics(self, election_id: str, position_id: str | None = None) -> dict[str, Any]:
        """Count ballots by derived status and participation turnout."""
        self.roster.get_election(election_id)
        now = self.clock()
        filters: dict[str, Any] = {"election_id": election_id}
        if position_id:
            filters["position_id"] = position_id
        ballots = self.db.select_many(
            "ballots",
            filters=filters,
            columns="id,ballot_status,ballot_close_time",
        )

        counts = {BALLOT_IN_PROGRESS: 0, BALLOT_SUBMITTED: 0, BALLOT_EXPIRED: 0}
        for ballot in ballots:
            counts[derive_ballot_status(ballot, now)] += 1

        confirmed = self.db.count(
            "election_participations",
            {"election_id": election_id, "status": PARTICIPATION_CONFIRMED},
        )
        voted = self.db.count(
            "election_participations",
            {"election_id": election_id, "has_voted": True},
        )
        total = len(ballots)
        return {
            "total_ballots": total,
            "submitted_ballots": counts[BALLOT_SUBMITTED],
            "in_progress_ballots": counts[BALLOT_IN_PROGRESS],
            "expired_ballots": counts[BALLOT_EXPIRED],
            "turnout_rate": round(counts[BALLOT_SUBMITTED] / total * 100, 2) if total else 0,
            "participants_confirmed": confirmed,
            "participants_voted": voted,
        }

    def cleanup_expired(self) -> int:
        """Delete in-progress ballots whose deadline has passed."""
        query = (
            self.db.client.table("ballots")
            .delete()
            .eq("ballot_status", BALLOT_IN_PROGRESS)
            .lt("ballot_close_time", to_iso(self.clock()))
        )
        rows = self.db.execute(query, default=[])
        return len(rows)

    def list_ballots(
        self,
        election_id: str,
        position_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """Return an election's ballots, newest first, with the total count.

        ``status`` filters on the stored column; each returned ballot still
        carries its clock-derived status.
        """
        self.roster.get_election(election_id)
        filters: dict[str, Any] = {"election_id": election_id}
        if position_id:
            filters["position_id"] = position_id
        if status:
            if status not in LIVE_STATUSES:
                raise InvalidInputError(f"Unknown ballot status filter: {status}")
            filters["ballot_status"] = status

        rows = self.db.select_many(
            "ballots",
            filters=filters,
            order_by="created_at",
            descending=True,
            limit=limit,
            offset=offset,
        )
        total = self.db.count("ballots", filters)

        now = self.clock()
        voters = self.db.get_voters_map(str(row["voter_id"]) for row in rows)
        ballots: list[dict[str, Any]] = []
        for row in rows:
            payload = present_ballot(row, now)
            voter = voters.get(str(row["voter_id"])) or {}
            payload["voter_name"] = voter_display_name(voter) if voter else None
            payload["school_id"] = voter.get("school_id")
            ballots.append(payload)
        return ballots, total

    def delete_ballot(self, ballot_id: str, actor_id: str | None = None) -> dict[str, Any]:
        """Remove a ballot and its votes.

        When the removed ballot was the voter's last submitted one in the
        election, the participation is reset to not voted so the voter can
        vote again.
        """
        ballot = self.db.select_one("ballots", {"id": ballot_id}, not_found_label="Ballot")
        voter_id = str(ballot["voter_id"])
        election_id = str(ballot["election_id"])

        removed_votes = self.db.delete("votes", {"ballot_id": ballot_id})
        self.db.delete("ballots", {"id": ballot_id})

        reset = False
        if ballot.get("ballot_status") == BALLOT_SUBMITTED:
            remaining = self.db.count(
                "ballots",
                {"voter_id": voter_id, "election_id": election_id, "ballot_status": BALLOT_SUBMITTED},
            )
            if remaining == 0:
                self.db.update(
                    "election_participations",
                    {"voter_id": voter_id, "election_id": election_id},
                    {"has_voted": False, "voted_at": None},
                )
                reset = True

        logger.warning(
            "Ballot %s of voter %s deleted by %s (%s votes)",
            ballot_id,
            voter_id,
            actor_id or "staff",
            len(removed_votes),
        )
        self.audit.log(
            "BALLOT_DELETED",
            voter_id,
            f"Deleted by {actor_id or 'staff'}, removed {len(removed_votes)} votes",
            election_id=election_id,
            ballot_id=ballot_id,
        )
        return {
            "ballot_id": ballot_id,
            "deleted_votes": len(removed_votes),
            "participation_reset": reset,
        }

    def update_year_restriction(
        self,
        position_id: str,
        allowed_year_levels: list[int],
    ) -> dict[str, Any]:
        """Set which year levels may vote for a departmental position.

        An empty list lifts the restriction.
        """
        position = self.roster.get_position(position_id)
        election = self.roster.get_election(str(position["election_id"]))
        if election["election_type"] != ELECTION_DEPARTMENTAL:
            raise InvalidInputError("Only departmental positions can be restricted by year level")

        levels = sorted(set(allowed_year_levels))
        rows = self.db.update("positions", {"id": position_id}, {"allowed_year_levels": levels})
        updated = rows[0] if rows else {**position, "allowed_year_levels": levels}
        logger.info("Position %s restricted to year levels %s", position_id, levels or "all")
        return {"position": updated}
