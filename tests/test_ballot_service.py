"""Ballot issuance and lifecycle tests."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from app.config import settings
from app.services.ballot_service import BallotService
from app.services.participation_service import ParticipationService
from app.services.submission_service import SubmissionService
from app.utils.errors import (
    BallotIssueConflictError,
    BallotNotYetOpenError,
    BallotWindowClosedError,
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    NotFoundError,
    ParticipationRequiredError,
    VoterIneligibleError,
)
from fakes import Clock, FakeSupabaseClient


@pytest.fixture
def service(db: FakeSupabaseClient, world: SimpleNamespace, clock: Clock) -> BallotService:
    return BallotService(db, clock=clock, sleep=lambda _: None)


@pytest.fixture
def confirmed(db: FakeSupabaseClient, world: SimpleNamespace, clock: Clock) -> None:
    """Ana has confirmed participation in both elections."""
    participation = ParticipationService(db, clock=clock)
    participation.confirm(world.ana, world.ssg["id"])
    participation.confirm(world.ana, world.dept["id"])


def _live_ballots(db: FakeSupabaseClient) -> list[dict]:
    return [
        row for row in db.rows("ballots") if row["ballot_status"] in ("in_progress", "submitted")
    ]


@pytest.mark.usefixtures("confirmed")
def test_ballot_not_available_before_window_then_issued_at_open(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    """A ballot is refused a second before opening and runs to the window close."""
    clock.set(7, 59)
    with pytest.raises(BallotNotYetOpenError):
        service.start_or_resume(world.ana, world.ssg["id"])
    assert db.rows("ballots") == []

    clock.set(8, 0, 1)
    issue = service.start_or_resume(world.ana, world.ssg["id"])
    ballot = issue["ballot"]

    assert issue["outcome"] == "created"
    assert ballot["ballot_status"] == "in_progress"
    assert ballot["ballot_close_time"] == "2025-03-10T17:00:00+00:00"
    assert ballot["seconds_remaining"] == 8 * 3600 + 59 * 60 + 59
    assert ballot["is_expired"] is False
    assert len(ballot["ballot_token"]) == 64


@pytest.mark.usefixtures("confirmed")
def test_late_submission_is_rejected_and_resume_fails_after_close(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    """Past the close, submit fails without touching the ballot; resume cleans it up."""
    ballot = service.start_or_resume(world.ana, world.ssg["id"])["ballot"]

    clock.set(17, 0, 1)
    submission = SubmissionService(db, clock=clock)
    with pytest.raises(BallotWindowClosedError):
        submission.submit(
            world.ana,
            ballot["id"],
            [{"position_id": world.president["id"], "candidate_id": world.presidents[0]["id"]}],
        )
    assert db.rows("ballots")[0]["ballot_status"] == "in_progress"
    assert db.rows("votes") == []

    with pytest.raises(BallotWindowClosedError):
        service.start_or_resume(world.ana, world.ssg["id"])
    assert db.rows("ballots") == []


def test_start_requires_confirmed_participation(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
) -> None:
    """No participation, no ballot."""
    with pytest.raises(ParticipationRequiredError) as exc_info:
        service.start_or_resume(world.ana, world.ssg["id"])
    assert exc_info.value.status_code == 403
    assert db.rows("ballots") == []


def test_withdrawn_participation_blocks_issuance(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    participation = ParticipationService(db, clock=clock)
    participation.confirm(world.ana, world.ssg["id"])
    participation.withdraw(world.ana, world.ssg["id"])

    with pytest.raises(ParticipationRequiredError):
        service.start_or_resume(world.ana, world.ssg["id"])


def test_ineligible_voter_is_refused(
    service: BallotService,
    world: SimpleNamespace,
) -> None:
    """Eligibility is checked before participation."""
    with pytest.raises(VoterIneligibleError):
        service.start_or_resume(world.ben, world.dept["id"], world.governor["id"])


@pytest.mark.usefixtures("confirmed")
def test_start_is_idempotent_while_in_progress(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    """Reloading the ballot page resumes the same ballot with the same deadline."""
    first = service.start_or_resume(world.ana, world.ssg["id"])
    clock.set(10)
    second = service.start_or_resume(world.ana, world.ssg["id"])

    assert second["outcome"] == "resumed"
    assert second["ballot"]["id"] == first["ballot"]["id"]
    assert second["ballot"]["ballot_close_time"] == first["ballot"]["ballot_close_time"]
    assert len(db.rows("ballots")) == 1


@pytest.mark.usefixtures("confirmed")
def test_submitted_ballot_is_returned_not_reissued(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    ballot = service.start_or_resume(world.ana, world.ssg["id"])["ballot"]
    SubmissionService(db, clock=clock).submit(
        world.ana,
        ballot["id"],
        [{"position_id": world.president["id"], "candidate_id": world.presidents[0]["id"]}],
    )

    issue = service.start_or_resume(world.ana, world.ssg["id"])
    assert issue["outcome"] == "submitted"
    assert issue["ballot"]["id"] == ballot["id"]
    assert issue["ballot"]["is_submitted"] is True
    assert len(db.rows("ballots")) == 1


@pytest.mark.usefixtures("confirmed")
def test_expired_ballot_is_replaced_while_window_open(
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    """A timed-out ballot is discarded and a fresh one issued with a new deadline."""
    db.tables["elections"][0]["ballot_duration_minutes"] = 30
    service = BallotService(db, clock=clock, sleep=lambda _: None)

    first = service.start_or_resume(world.ana, world.ssg["id"])["ballot"]
    assert first["ballot_close_time"] == "2025-03-10T09:30:00+00:00"

    clock.set(9, 30)
    status = service.ballot_status(world.ana, world.ssg["id"])
    assert status["ballot"]["is_expired"] is True
    assert status["has_voted"] is False

    issue = service.start_or_resume(world.ana, world.ssg["id"])
    assert issue["outcome"] == "reissued"
    assert issue["ballot"]["id"] != first["id"]
    assert issue["ballot"]["ballot_close_time"] == "2025-03-10T10:00:00+00:00"
    assert [row["id"] for row in db.rows("ballots")] == [issue["ballot"]["id"]]
    assert "BALLOT_REISSUED" in [row["action"] for row in db.rows("audit_logs")]


@pytest.mark.usefixtures("confirmed")
def test_concurrent_starts_return_one_ballot(
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    """Parallel requests for the same scope collapse onto a single ballot."""
    barrier = threading.Barrier(8)
    results: list[str] = []
    errors: list[Exception] = []

    def start() -> None:
        service = BallotService(db, clock=clock, sleep=lambda _: None)
        barrier.wait()
        try:
            results.append(service.start_or_resume(world.ana, world.ssg["id"])["ballot"]["id"])
        except Exception as exc:  # collected for the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=start) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(set(results)) == 1
    assert len(_live_ballots(db)) == 1


@pytest.mark.usefixtures("confirmed")
def test_insert_conflict_resumes_the_winning_ballot(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
) -> None:
    """Losing the insert race retries and hands back the other request's ballot."""
    winner: dict = {}

    def concurrent_start(client: FakeSupabaseClient, payloads: list) -> None:
        if not winner:
            winner.update(client.seed("ballots", {**payloads[0], "ballot_token": "other"})[0])

    db.add_insert_hook("ballots", concurrent_start)
    issue = service.start_or_resume(world.ana, world.ssg["id"])

    assert issue["outcome"] == "resumed"
    assert issue["ballot"]["id"] == winner["id"]
    assert len(_live_ballots(db)) == 1


@pytest.mark.usefixtures("confirmed")
def test_persistent_conflict_is_retryable_error(
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Retries are bounded, back off linearly and end in a retryable error."""
    monkeypatch.setattr(settings, "ballot_issue_retry_delay_ms", 10)
    delays: list[float] = []

    def always_conflict(client: FakeSupabaseClient, payloads: list) -> None:
        # A live ballot appears and vanishes between lookup and insert.
        client.seed("ballots", {**payloads[0], "ballot_token": f"race-{len(delays)}"})

    def sleep(seconds: float) -> None:
        delays.append(seconds)
        db.tables["ballots"].clear()

    db.add_insert_hook("ballots", always_conflict)
    service = BallotService(db, clock=clock, sleep=sleep)

    with pytest.raises(BallotIssueConflictError) as exc_info:
        service.start_or_resume(world.ana, world.ssg["id"])
    assert exc_info.value.to_dict()["retryable"] is True
    assert exc_info.value.status_code == 503
    assert delays == [0.01, 0.02]


@pytest.mark.usefixtures("confirmed")
def test_departmental_ballots_are_per_position(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    """Each position has its own window and its own ballot."""
    with pytest.raises(InvalidInputError):
        service.start_or_resume(world.ana, world.dept["id"])
    with pytest.raises(InvalidInputError):
        service.start_or_resume(world.ana, world.ssg["id"], world.president["id"])

    with pytest.raises(BallotNotYetOpenError):
        service.start_or_resume(world.ana, world.dept["id"], world.governor["id"])

    clock.set(13, 30)
    governor = service.start_or_resume(world.ana, world.dept["id"], world.governor["id"])
    assert governor["ballot"]["ballot_close_time"] == "2025-03-10T15:00:00+00:00"
    assert governor["ballot"]["position_id"] == world.governor["id"]

    with pytest.raises(VoterIneligibleError):
        service.start_or_resume(world.ana, world.dept["id"], world.representative["id"])


@pytest.mark.usefixtures("confirmed")
def test_position_from_another_election_is_not_found(
    service: BallotService,
    world: SimpleNamespace,
) -> None:
    with pytest.raises(NotFoundError):
        service.start_or_resume(world.ana, world.dept["id"], world.president["id"])


@pytest.mark.usefixtures("confirmed")
def test_ballot_status_reports_state(
    service: BallotService,
    world: SimpleNamespace,
) -> None:
    before = service.ballot_status(world.ana, world.ssg["id"])
    assert before["has_voted"] is False
    assert before["can_vote"] is True
    assert before["has_participated"] is True
    assert before["ballot"] is None
    assert before["window"]["phase"] == "open"

    service.start_or_resume(world.ana, world.ssg["id"])
    during = service.ballot_status(world.ana, world.ssg["id"])
    assert during["ballot"]["ballot_status"] == "in_progress"

    ineligible = service.ballot_status(world.cara, world.ssg["id"])
    assert ineligible["can_vote"] is False
    assert ineligible["voter_eligibility"]["code"] == "NOT_REGISTERED"


@pytest.mark.usefixtures("confirmed")
def test_available_positions(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    clock.set(13, 30)
    ballot = service.start_or_resume(world.ana, world.dept["id"], world.governor["id"])["ballot"]
    SubmissionService(db, clock=clock).submit(
        world.ana,
        ballot["id"],
        [{"position_id": world.governor["id"], "candidate_id": world.governors[1]["id"]}],
    )

    available = service.available_positions(world.ana, world.dept["id"])
    by_name = {item["position"]["position_name"]: item for item in available["positions"]}

    assert available["total_positions"] == 2
    assert available["voted_positions"] == 1
    assert by_name["Governor"]["has_voted"] is True
    assert by_name["Governor"]["can_vote"] is False
    assert by_name["Representative"]["can_vote"] is False
    assert by_name["Representative"]["window"]["phase"] == "open"

    with pytest.raises(InvalidInputError):
        service.available_positions(world.ana, world.ssg["id"])


@pytest.mark.usefixtures("confirmed")
def test_ballot_votes_are_owner_only(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    ballot = service.start_or_resume(world.ana, world.ssg["id"])["ballot"]
    SubmissionService(db, clock=clock).submit(
        world.ana,
        ballot["id"],
        [
            {"position_id": world.senator["id"], "candidate_id": world.senators[2]["id"]},
            {"position_id": world.president["id"], "candidate_id": world.presidents[0]["id"]},
        ],
    )

    review = service.ballot_votes(world.ana, ballot["id"])
    assert [vote["position_name"] for vote in review["votes"]] == ["President", "Senator"]
    assert review["votes"][0]["candidate_name"] == "Dino Santos"
    assert review["votes"][0]["partylist_name"] == "Bagong Lakas"

    with pytest.raises(ForbiddenError):
        service.ballot_votes(world.ben, ballot["id"])


@pytest.mark.usefixtures("confirmed")
def test_extend_timer_moves_deadline_later(
    service: BallotService,
    world: SimpleNamespace,
) -> None:
    ballot = service.start_or_resume(world.ana, world.ssg["id"])["ballot"]
    extended = service.extend_timer(ballot["id"], 15, actor_id="staff-1")
    assert extended["ballot_close_time"] == "2025-03-10T17:15:00+00:00"

    for minutes in (0, 61):
        with pytest.raises(InvalidInputError):
            service.extend_timer(ballot["id"], minutes)


@pytest.mark.usefixtures("confirmed")
def test_extend_timer_rejects_expired_ballot(
    service: BallotService,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    ballot = service.start_or_resume(world.ana, world.ssg["id"])["ballot"]
    clock.set(17)
    with pytest.raises(ConflictError) as exc_info:
        service.extend_timer(ballot["id"], 10)
    assert exc_info.value.code == "BALLOT_NOT_ACTIVE"


@pytest.mark.usefixtures("confirmed")
def test_update_position_timing_extends_open_ballots_only_later(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    """Moving a position's close later carries its live ballots along."""
    clock.set(13, 30)
    ballot = service.start_or_resume(world.ana, world.dept["id"], world.governor["id"])["ballot"]

    result = service.update_position_timing(world.governor["id"], "13:00", "16:00")
    assert result["extended_ballots"] == 1
    assert result["window"]["phase"] == "open"
    stored = next(row for row in db.rows("ballots") if row["id"] == ballot["id"])
    assert stored["ballot_close_time"] == "2025-03-10T16:00:00+00:00"

    result = service.update_position_timing(world.governor["id"], "13:00", "14:30")
    assert result["extended_ballots"] == 0
    stored = next(row for row in db.rows("ballots") if row["id"] == ballot["id"])
    assert stored["ballot_close_time"] == "2025-03-10T16:00:00+00:00"


def test_update_position_timing_validation(
    service: BallotService,
    world: SimpleNamespace,
) -> None:
    with pytest.raises(InvalidInputError):
        service.update_position_timing(world.governor["id"], "15:00", "14:00")
    with pytest.raises(InvalidInputError):
        service.update_position_timing(world.president["id"], "09:00", "10:00")


@pytest.mark.usefixtures("confirmed")
def test_statistics_and_cleanup(
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    """Expired ballots count as expired until the cleanup job deletes them."""
    db.tables["elections"][0]["ballot_duration_minutes"] = 30
    service = BallotService(db, clock=clock, sleep=lambda _: None)
    service.start_or_resume(world.ana, world.ssg["id"])

    clock.now = datetime(2025, 3, 10, 9, 45, tzinfo=UTC)
    stats = service.statistics(world.ssg["id"])
    assert stats["total_ballots"] == 1
    assert stats["expired_ballots"] == 1
    assert stats["in_progress_ballots"] == 0
    assert stats["turnout_rate"] == 0
    assert stats["participants_confirmed"] == 1

    assert service.cleanup_expired() == 1
    assert db.rows("ballots") == []


@pytest.mark.usefixtures("confirmed")
def test_election_status_in_responses_follows_the_clock(
    service: BallotService,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    """A stored 'active' status does not survive the window closing."""
    assert service.ballot_status(world.ana, world.ssg["id"])["election"]["status"] == "active"

    clock.set(18)
    status = service.ballot_status(world.ana, world.ssg["id"])
    assert status["window"]["phase"] == "closed"
    assert status["election"]["status"] == "completed"
    assert service.available_positions(world.ana, world.dept["id"])["election"]["status"] == (
        "completed"
    )

    clock.set(7)
    assert service.ballot_status(world.ana, world.ssg["id"])["election"]["status"] == "upcoming"


@pytest.mark.usefixtures("confirmed")
def test_list_ballots_for_committee_review(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    ana_ballot = service.start_or_resume(world.ana, world.ssg["id"])["ballot"]
    ParticipationService(db, clock=clock).confirm(world.ben, world.ssg["id"])
    ben_ballot = service.start_or_resume(world.ben, world.ssg["id"])["ballot"]
    SubmissionService(db, clock=clock).submit(
        world.ana,
        ana_ballot["id"],
        [{"position_id": world.president["id"], "candidate_id": world.presidents[0]["id"]}],
    )

    ballots, total = service.list_ballots(world.ssg["id"])
    assert total == 2
    assert [row["id"] for row in ballots] == [ben_ballot["id"], ana_ballot["id"]]
    assert ballots[1]["voter_name"] == "Ana Reyes"
    assert ballots[1]["school_id"] == "2021-0001"
    assert ballots[1]["is_submitted"] is True

    submitted, total = service.list_ballots(world.ssg["id"], status="submitted")
    assert total == 1
    assert submitted[0]["id"] == ana_ballot["id"]

    page, total = service.list_ballots(world.ssg["id"], limit=1, offset=1)
    assert total == 2
    assert [row["id"] for row in page] == [ana_ballot["id"]]

    with pytest.raises(InvalidInputError):
        service.list_ballots(world.ssg["id"], status="expired")


@pytest.mark.usefixtures("confirmed")
def test_delete_submitted_ballot_lets_voter_vote_again(
    service: BallotService,
    db: FakeSupabaseClient,
    world: SimpleNamespace,
    clock: Clock,
) -> None:
    ballot = service.start_or_resume(world.ana, world.ssg["id"])["ballot"]
    SubmissionService(db, clock=clock).submit(
        world.ana,
        ballot["id"],
        [
            {"position_id": world.president["id"], "candidate_id": world.presidents[0]["id"]},
            {"position_id": world.senator["id"], "candidate_id": world.senators[0]["id"]},
        ],
    )

    result = service.delete_ballot(ballot["id"], actor_id="staff-1")
    assert result == {"ballot_id": ballot["id"], "deleted_votes": 2, "participation_reset": True}
    assert db.rows("ballots") == []
    assert db.rows("votes") == []
    participation = next(
        row for row in db.rows("election_participations") if row["election_id"] == world.ssg["id"]
    )
    assert participation["has_voted"] is False
    assert "BALLOT_DELETED" in [row["action"] for row in db.rows("audit_logs")]

    assert service.start_or_resume(world.ana, world.ssg["id"])["outcome"] == "created"

    with pytest.raises(NotFoundError):
        service.delete_ballot("missing-ballot")


@pytest.mark.usefixtures("confirmed")
def test_delete_in_progress_ballot_keeps_participation(
    service: BallotService,
    world: SimpleNamespace,
) -> None:
    ballot = service.start_or_resume(world.ana, world.ssg["id"])["ballot"]
    result = service.delete_ballot(ballot["id"])
    assert result["deleted_votes"] == 0
    assert result["participation_reset"] is False


@pytest.mark.usefixtures("confirmed")
def test_year_restriction_update_changes_who_can_vote(
    service: BallotService,
    world: SimpleNamespace,
) -> None:
    """Ana is a third year, so she needs year 3 on the representative position."""
    with pytest.raises(VoterIneligibleError):
        service.start_or_resume(world.ana, world.dept["id"], world.representative["id"])

    result = service.update_year_restriction(world.representative["id"], [3, 1, 3])
    assert result["position"]["allowed_year_levels"] == [1, 3]
    issue = service.start_or_resume(world.ana, world.dept["id"], world.representative["id"])
    assert issue["outcome"] == "created"

    lifted = service.update_year_restriction(world.governor["id"], [])
    assert lifted["position"]["allowed_year_levels"] == []

    with pytest.raises(InvalidInputError):
        service.update_year_restriction(world.president["id"], [1])
