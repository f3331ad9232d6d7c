"""Service package exports with lazy loading."""

from __future__ import annotations

from importlib import import_module
from typing import Any

_EXPORTS = {
    "AuditService": "app.services.audit_service",
    "BallotService": "app.services.ballot_service",
    "EligibilityService": "app.services.eligibility_service",
    "ParticipationService": "app.services.participation_service",
    "RosterService": "app.services.roster_service",
    "SubmissionService": "app.services.submission_service",
    "SupabaseService": "app.services.common",
}

__all__ = sorted(_EXPORTS.keys())


def __getattr__(name: str) -> Any:
    if name not in _EXPORTS:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module = import_module(_EXPORTS[name])
    return getattr(module, name)
