"""API router package."""

from app.routers import ballots, participation

__all__ = ["ballots", "participation"]
