"""Background job modules for periodic ballot housekeeping."""

from app.jobs.expired_ballots import expired_ballot_cleanup

__all__ = ["expired_ballot_cleanup"]
