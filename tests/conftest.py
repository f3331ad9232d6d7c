"""Pytest fixtures for backend tests."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient


def _set_default_env() -> None:
    os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
    os.environ.setdefault("SUPABASE_ANON_KEY", "anon-key")
    os.environ.setdefault("SUPABASE_SERVICE_KEY", "service-key")
    os.environ.setdefault("ENABLE_SCHEDULER", "false")
    os.environ.setdefault("TIMEZONE", "UTC")
    os.environ.setdefault("BALLOT_ISSUE_RETRY_DELAY_MS", "0")


# Settings are read when app modules are first imported.
_set_default_env()

from fakes import Clock, FakeSupabaseClient, build_client, seed_world  # noqa: E402


@pytest.fixture(scope="session")
def client() -> TestClient:
    """Create a FastAPI test client."""
    from app.main import app

    return TestClient(app)


@pytest.fixture
def db() -> FakeSupabaseClient:
    """Fresh in-memory database with the ballot schema constraints."""
    return build_client()


@pytest.fixture
def world(db: FakeSupabaseClient) -> SimpleNamespace:
    """Seeded elections, positions, candidates and voters."""
    return seed_world(db)


@pytest.fixture
def clock() -> Clock:
    """Clock at 09:00 UTC on the seeded election day."""
    return Clock(datetime(2025, 3, 10, 9, 0, tzinfo=UTC))
