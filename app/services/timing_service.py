"""Ballot window resolution and derived election/ballot status.

Everything here is a pure function of the current time and stored
configuration. Nothing is cached: callers resolve the window again on every
request so a stale stored status can never disagree with the clock.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any

from app.utils.errors import InvalidInputError
from app.utils.time import parse_iso_date, parse_timestamp, seconds_between

logger = logging.getLogger(__name__)

NOT_SCHEDULED = "not_scheduled"
SCHEDULED = "scheduled"
OPEN = "open"
CLOSED = "closed"

ELECTION_SSG = "ssg"
ELECTION_DEPARTMENTAL = "departmental"

BALLOT_IN_PROGRESS = "in_progress"
BALLOT_SUBMITTED = "submitted"
BALLOT_EXPIRED = "expired"

_TIME_OF_DAY = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


@dataclass(frozen=True)
class BallotWindow:
    """Resolved voting window for an election or position at one instant."""

    phase: str
    opens_at: datetime | None = None
    closes_at: datetime | None = None
    opens_in: int | None = None
    closes_in: int | None = None

    @property
    def is_open(self) -> bool:
        return self.phase == OPEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "is_open": self.is_open,
            "opens_at": self.opens_at.isoformat() if self.opens_at else None,
            "closes_at": self.closes_at.isoformat() if self.closes_at else None,
            "opens_in": self.opens_in,
            "closes_in": self.closes_in,
        }


def parse_time_of_day(value: str) -> time:
    """Parse ``HH:MM`` (24-hour) into a ``time``.

    Postgres ``time`` columns come back from PostgREST as ``HH:MM:SS``, so a
    trailing seconds field is accepted too.

    Raises:
        InvalidInputError: when the value is not within 00:00-23:59.
    """
    match = _TIME_OF_DAY.match(str(value).strip())
    if not match:
        raise InvalidInputError(f"Ballot time must be in HH:MM format (24-hour), got {value!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    seconds = int(match.group(3) or 0)
    if not (0 <= hours <= 23 and 0 <= minutes <= 59 and 0 <= seconds <= 59):
        raise InvalidInputError(f"Ballot time must be between 00:00 and 23:59, got {value!r}")
    return time(hours, minutes, seconds)


def validate_window_config(open_time: str | None, close_time: str | None) -> None:
    """Validate configured open/close times; close must be strictly after open."""
    opens = parse_time_of_day(open_time) if open_time else None
    closes = parse_time_of_day(close_time) if close_time else None
    if opens is not None and closes is not None and closes <= opens:
        raise InvalidInputError("Ballot close time must be after ballot open time")


def resolve_window(
    now: datetime,
    election_date: str | date | None,
    open_time: str | None = None,
    close_time: str | None = None,
    tz: tzinfo = UTC,
) -> BallotWindow:
    """Resolve the window phase for a calendar day plus optional HH:MM bounds.

    Without open/close times the window spans the whole election day in
    ``tz``. A missing bound falls back to the start or end of that day.
    """
    if not election_date:
        return BallotWindow(phase=NOT_SCHEDULED)

    day = parse_iso_date(election_date)
    day_start = datetime.combine(day, time.min, tzinfo=tz)
    day_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)

    opens_at = datetime.combine(day, parse_time_of_day(open_time), tzinfo=tz) if open_time else day_start
    closes_at = (
        datetime.combine(day, parse_time_of_day(close_time), tzinfo=tz) if close_time else day_end
    )
    opens_at = opens_at.astimezone(UTC)
    closes_at = closes_at.astimezone(UTC)

    if closes_at <= opens_at:
        logger.warning("Ignoring inverted ballot window %s-%s on %s", open_time, close_time, day)
        return BallotWindow(phase=NOT_SCHEDULED)

    if now < opens_at:
        return BallotWindow(
            phase=SCHEDULED,
            opens_at=opens_at,
            closes_at=closes_at,
            opens_in=seconds_between(now, opens_at),
        )
    if now >= closes_at:
        return BallotWindow(phase=CLOSED, opens_at=opens_at, closes_at=closes_at)
    return BallotWindow(
        phase=OPEN,
        opens_at=opens_at,
        closes_at=closes_at,
        closes_in=seconds_between(now, closes_at),
    )


def scope_window(
    election: dict[str, Any],
    position: dict[str, Any] | None,
    now: datetime,
    tz: tzinfo = UTC,
) -> BallotWindow:
    """Resolve the window for a ballot scope.

    Departmental positions may override either bound of the election window.
    SSG positions always follow the election.
    """
    open_time = election.get("ballot_open_time")
    close_time = election.get("ballot_close_time")
    if position and election.get("election_type") == ELECTION_DEPARTMENTAL:
        open_time = position.get("ballot_open_time") or open_time
        close_time = position.get("ballot_close_time") or close_time
    return resolve_window(now, election.get("election_date"), open_time, close_time, tz)


def derive_election_status(election: dict[str, Any], now: datetime, tz: tzinfo = UTC) -> str:
    """Return draft/cancelled when stored, else upcoming/active/completed from the clock."""
    stored = str(election.get("status") or "")
    if stored in {"draft", "cancelled"}:
        return stored

    phase = scope_window(election, None, now, tz).phase
    if phase == OPEN:
        return "active"
    if phase == CLOSED:
        return "completed"
    return "upcoming"


def present_election(election: dict[str, Any], now: datetime, tz: tzinfo = UTC) -> dict[str, Any]:
    """Return a copy of an election row with ``status`` derived from the clock."""
    payload = dict(election)
    payload["status"] = derive_election_status(election, now, tz)
    return payload


def ballot_deadline(
    window: BallotWindow,
    now: datetime,
    duration_minutes: int | None = None,
) -> datetime:
    """Return the close instant for a ballot issued now inside ``window``."""
    if window.closes_at is None:
        raise InvalidInputError("Ballot window has no close time")
    if duration_minutes:
        return min(window.closes_at, now + timedelta(minutes=int(duration_minutes)))
    return window.closes_at


def derive_ballot_status(ballot: dict[str, Any], now: datetime) -> str:
    """Classify a stored ballot; any stored ``expired`` flag is ignored."""
    if ballot.get("ballot_status") == BALLOT_SUBMITTED:
        return BALLOT_SUBMITTED
    closes_at = parse_timestamp(ballot.get("ballot_close_time"))
    if closes_at is None or now >= closes_at:
        return BALLOT_EXPIRED
    return BALLOT_IN_PROGRESS


def seconds_remaining(ballot: dict[str, Any], now: datetime) -> int:
    """Seconds until the ballot deadline, zero once expired or submitted."""
    if derive_ballot_status(ballot, now) != BALLOT_IN_PROGRESS:
        return 0
    closes_at = parse_timestamp(ballot.get("ballot_close_time"))
    return seconds_between(now, closes_at) if closes_at else 0
