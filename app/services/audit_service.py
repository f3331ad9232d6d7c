"""Audit trail for voter ballot actions."""

from __future__ import annotations

import logging
from typing import Any

from app.services.common import SupabaseService
from app.utils.errors import AppError
from supabase import Client

logger = logging.getLogger(__name__)


class AuditService:
    """Append voter actions to ``audit_logs``."""

    def __init__(self, client: Client) -> None:
        self.db = SupabaseService(client)

    def log(
        self,
        action: str,
        voter_id: str | None,
        details: str,
        election_id: str | None = None,
        ballot_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Record one action.

        The action it describes has already been committed, so a failed
        audit write is logged rather than surfaced to the voter.
        """
        try:
            return self.db.insert_one(
                "audit_logs",
                {
                    "action": action,
                    "voter_id": voter_id,
                    "election_id": election_id,
                    "ballot_id": ballot_id,
                    "details": details,
                },
            )
        except AppError:
            logger.exception("Failed to write audit log %s for voter %s", action, voter_id)
            return None
