"""Read access to elections, positions and candidate rosters."""

from __future__ import annotations

from typing import Any

from app.services.common import SupabaseService, voter_display_name
from app.services.timing_service import ELECTION_DEPARTMENTAL, ELECTION_SSG
from app.utils.errors import InvalidInputError, NotFoundError
from supabase import Client

ELECTION_TYPES = {ELECTION_SSG, ELECTION_DEPARTMENTAL}


class RosterService:
    """Election configuration and candidate roster lookups."""

    def __init__(self, client: Client) -> None:
        self.db = SupabaseService(client)

    def get_election(self, election_id: str) -> dict[str, Any]:
        """Return one election or raise NotFoundError."""
        election = self.db.select_one("elections", {"id": election_id}, not_found_label="Election")
        if election.get("election_type") not in ELECTION_TYPES:
            raise InvalidInputError(f"Unsupported election type: {election.get('election_type')}")
        return election

    def get_position(self, position_id: str) -> dict[str, Any]:
        """Return one position or raise NotFoundError."""
        return self.db.select_one("positions", {"id": position_id}, not_found_label="Position")

    def resolve_scope(
        self,
        election_id: str,
        position_id: str | None,
    ) -> tuple[dict[str, Any], dict[str, Any] | None]:
        """Load the election and, for departmental ballots, its position.

        Departmental ballots are issued per position, so a position is
        required there and rejected for SSG elections.
        """
        election = self.get_election(election_id)
        if election["election_type"] == ELECTION_SSG:
            if position_id:
                raise InvalidInputError("SSG ballots cover the whole election; omit position_id")
            return election, None

        if not position_id:
            raise InvalidInputError("position_id is required for departmental ballots")
        position = self.get_position(position_id)
        if str(position.get("election_id")) != str(election["id"]):
            raise NotFoundError("Position")
        if not position.get("is_active", True):
            raise InvalidInputError("Position is not active")
        return election, position

    def positions_for_election(
        self,
        election_id: str,
        active_only: bool = True,
    ) -> list[dict[str, Any]]:
        """Return positions ordered by ballot order."""
        filters: dict[str, Any] = {"election_id": election_id}
        if active_only:
            filters["is_active"] = True
        return self.db.select_many("positions", filters=filters, order_by="position_order")

    def get_candidates_for_position(
        self,
        position_id: str,
        active_only: bool = True,
    ) -> list[dict[str, Any]]:
        """Return a position's candidates with display names, by candidate number."""
        filters: dict[str, Any] = {"position_id": position_id}
        if active_only:
            filters["is_active"] = True
        candidates = self.db.select_many("candidates", filters=filters, order_by="candidate_number")
        return self._hydrate_candidates(candidates)

    def candidates_by_id(self, candidate_ids: list[str]) -> dict[str, dict[str, Any]]:
        """Return candidate rows keyed by id."""
        if not candidate_ids:
            return {}
        rows = self.db.select_many("candidates", filters={"id": sorted(set(candidate_ids))})
        return {str(row["id"]): row for row in self._hydrate_candidates(rows)}

    def _hydrate_candidates(self, candidates: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not candidates:
            return []

        voters = self.db.get_voters_map(str(row["voter_id"]) for row in candidates)
        partylist_ids = sorted(
            {str(row["partylist_id"]) for row in candidates if row.get("partylist_id")}
        )
        partylists = (
            {
                str(row["id"]): row
                for row in self.db.select_many(
                    "partylists",
                    filters={"id": partylist_ids},
                    columns="id,partylist_name",
                )
            }
            if partylist_ids
            else {}
        )

        hydrated: list[dict[str, Any]] = []
        for row in candidates:
            payload = dict(row)
            payload["name"] = voter_display_name(voters.get(str(row["voter_id"])))
            partylist = partylists.get(str(row.get("partylist_id")))
            payload["partylist_name"] = partylist["partylist_name"] if partylist else None
            hydrated.append(payload)
        return hydrated

    def describe_votes(self, votes: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Attach position and candidate details to vote rows, in ballot order."""
        if not votes:
            return []

        position_ids = sorted({str(vote["position_id"]) for vote in votes})
        positions = {
            str(row["id"]): row
            for row in self.db.select_many("positions", filters={"id": position_ids})
        }
        candidates = self.candidates_by_id([str(vote["candidate_id"]) for vote in votes])

        described: list[dict[str, Any]] = []
        for vote in votes:
            position = positions.get(str(vote["position_id"])) or {}
            candidate = candidates.get(str(vote["candidate_id"])) or {}
            described.append(
                {
                    "ballot_id": vote.get("ballot_id"),
                    "position_id": vote["position_id"],
                    "position_name": position.get("position_name"),
                    "position_order": position.get("position_order"),
                    "candidate_id": vote["candidate_id"],
                    "candidate_number": candidate.get("candidate_number"),
                    "candidate_name": candidate.get("name"),
                    "partylist_name": candidate.get("partylist_name"),
                }
            )
        described.sort(
            key=lambda item: (item["position_order"] or 0, item["candidate_number"] or 0)
        )
        return described

    def preview(self, election_id: str, position_id: str | None = None) -> list[dict[str, Any]]:
        """Return ``{position, candidates}`` groups ordered by position order."""
        election = self.get_election(election_id)
        if position_id:
            if election["election_type"] == ELECTION_SSG:
                raise InvalidInputError("SSG ballots cover the whole election; omit position_id")
            _, position = self.resolve_scope(election_id, position_id)
            positions = [position]
        else:
            positions = self.positions_for_election(election_id)

        return [
            {
                "position": position,
                "candidates": self.get_candidates_for_position(str(position["id"])),
            }
            for position in positions
        ]
