"""Expired ballot cleanup job."""

from __future__ import annotations

import logging

from app.services.ballot_service import BallotService
from app.utils.supabase_client import get_service_client

logger = logging.getLogger(__name__)


async def expired_ballot_cleanup() -> None:
    """Delete in-progress ballots past their deadline.

    Expiry is already enforced on every read, so this only keeps the
    ballots table small.
    """
    removed = BallotService(get_service_client()).cleanup_expired()
    logger.info("expired_ballot_cleanup completed with %s ballots removed", removed)
