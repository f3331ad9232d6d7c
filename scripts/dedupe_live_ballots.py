"""Remove duplicate live ballots so the one-live-ballot index can be created."""

from __future__ import annotations

import argparse
import sys
from collections import defaultdict
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

LIVE_STATUSES = ["in_progress", "submitted"]


def parse_args() -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Keep one live ballot per voter and scope in public.ballots.",
    )
    parser.add_argument(
        "--election-id",
        type=str,
        default=None,
        help="Only check ballots of this election.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report duplicates without deleting them.",
    )
    return parser.parse_args()


def find_duplicates(ballots: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Return the ballots to delete.

    Within each (voter, election, position) group a submitted ballot is kept,
    otherwise the most recently created one.
    """
    groups: dict[tuple, list[dict[str, Any]]] = defaultdict(list)
    for ballot in ballots:
        key = (
            str(ballot["voter_id"]),
            str(ballot["election_id"]),
            str(ballot.get("position_id") or ""),
        )
        groups[key].append(ballot)

    extra: list[dict[str, Any]] = []
    for rows in groups.values():
        if len(rows) < 2:
            continue
        rows.sort(
            key=lambda row: (row["ballot_status"] == "submitted", str(row.get("created_at") or "")),
            reverse=True,
        )
        extra.extend(rows[1:])
    return extra


def dedupe(election_id: str | None, dry_run: bool) -> list[dict[str, Any]]:
    """Delete duplicate live ballots and return them."""
    from app.services.common import SupabaseService
    from app.utils.supabase_client import get_service_client

    db = SupabaseService(get_service_client())
    filters: dict[str, Any] = {"ballot_status": LIVE_STATUSES}
    if election_id:
        filters["election_id"] = election_id
    ballots = db.select_many(
        "ballots",
        filters=filters,
        columns="id,voter_id,election_id,position_id,ballot_status,created_at",
    )

    duplicates = find_duplicates(ballots)
    if duplicates and not dry_run:
        db.delete("ballots", {"id": [str(row["id"]) for row in duplicates]})
    return duplicates


def main() -> None:
    """CLI entry point."""
    args = parse_args()
    duplicates = dedupe(args.election_id, args.dry_run)
    verb = "Would delete" if args.dry_run else "Deleted"
    print(f"{verb} {len(duplicates)} duplicate ballot(s)")
    for ballot in duplicates:
        print(f"{ballot['id']} voter={ballot['voter_id']} status={ballot['ballot_status']}")


if __name__ == "__main__":
    main()
