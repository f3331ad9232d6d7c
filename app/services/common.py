"""Shared Supabase data access helpers."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from typing import Any

import httpx
from postgrest import APIError

from app.config import settings
from app.utils.errors import ConflictError, InvalidInputError, NotFoundError, ServiceUnavailableError
from supabase import Client

UNIQUE_VIOLATION = "23505"
logger = logging.getLogger(__name__)


def is_unique_violation(exc: APIError) -> bool:
    """Return True when a write failed on a unique constraint."""
    message = str(getattr(exc, "message", "")).lower()
    code = str(getattr(exc, "code", ""))
    return code == UNIQUE_VIOLATION or "duplicate key value" in message


def _apply_filters(query, filters: dict[str, Any] | None):
    """Apply equality filters; list/tuple/set values become ``in`` filters."""
    for key, value in (filters or {}).items():
        if value is None:
            query = query.is_(key, "null")
        elif isinstance(value, (list, tuple, set)):
            query = query.in_(key, list(value))
        else:
            query = query.eq(key, value)
    return query


class SupabaseService:
    """Thin helper wrapper around a Supabase client."""

    def __init__(self, client: Client) -> None:
        self.client = client

    def execute(self, query, default: Any = None) -> Any:
        """Execute a Supabase query and normalize API errors."""
        started = time.perf_counter()
        try:
            response = query.execute()
        except APIError as exc:
            message = getattr(exc, "message", None) or "Database request failed"
            if is_unique_violation(exc):
                raise ConflictError(str(message), code="UNIQUE_VIOLATION") from exc
            raise InvalidInputError(str(message)) from exc
        except httpx.TransportError as exc:
            logger.error("Supabase transport failure: %s", exc)
            raise ServiceUnavailableError() from exc

        elapsed_ms = (time.perf_counter() - started) * 1000
        threshold_ms = settings.slow_query_log_threshold_ms
        if threshold_ms > 0 and elapsed_ms >= threshold_ms:
            logger.warning("Slow Supabase query %.1fms", elapsed_ms)
        data = response.data
        return default if data is None and default is not None else data

    def select_one(
        self,
        table: str,
        filters: dict[str, Any],
        columns: str = "*",
        not_found_label: str | None = None,
    ) -> dict[str, Any]:
        """Select a single row and raise NotFoundError when missing."""
        query = _apply_filters(self.client.table(table).select(columns), filters)
        rows = self.execute(query.limit(1), default=[])
        if not rows:
            label = not_found_label or table
            raise NotFoundError(label)
        return rows[0]

    def select_first(
        self,
        table: str,
        filters: dict[str, Any],
        columns: str = "*",
    ) -> dict[str, Any] | None:
        """Select a single row or return None."""
        query = _apply_filters(self.client.table(table).select(columns), filters)
        rows = self.execute(query.limit(1), default=[])
        return rows[0] if rows else None

    def select_many(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        columns: str = "*",
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """Select many rows from a table with optional filters and paging."""
        query = _apply_filters(self.client.table(table).select(columns), filters)
        if order_by:
            query = query.order(order_by, desc=descending)
        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return self.execute(query, default=[])

    def count(self, table: str, filters: dict[str, Any] | None = None) -> int:
        """Count rows in a table with optional equality filters."""
        query = _apply_filters(
            self.client.table(table).select("*", count="exact", head=True),
            filters,
        )
        try:
            response = query.execute()
            return response.count or 0
        except APIError as exc:
            message = getattr(exc, "message", "Database request failed")
            raise InvalidInputError(str(message)) from exc
        except httpx.TransportError as exc:
            raise ServiceUnavailableError() from exc

    def insert_one(self, table: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Insert one row and return the created object."""
        rows = self.execute(self.client.table(table).insert(payload), default=[])
        if not rows:
            raise InvalidInputError(f"Failed to insert into {table}")
        return rows[0]

    def update(
        self,
        table: str,
        filters: dict[str, Any],
        payload: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Update rows by filters and return the updated rows."""
        query = _apply_filters(self.client.table(table).update(payload), filters)
        return self.execute(query, default=[])

    def delete(self, table: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        """Delete rows by filters and return removed rows."""
        query = _apply_filters(self.client.table(table).delete(), filters)
        return self.execute(query, default=[])

    def rpc(self, function: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Call a Postgres function and return its rows."""
        rows = self.execute(self.client.rpc(function, params), default=[])
        if isinstance(rows, dict):
            return [rows]
        return rows

    def get_voters_map(self, voter_ids: Iterable[str]) -> dict[str, dict[str, Any]]:
        """Fetch multiple voter records and return an id-keyed mapping."""
        ids = sorted({str(vid) for vid in voter_ids if vid})
        if not ids:
            return {}
        rows = self.select_many(
            "voters",
            filters={"id": ids},
            columns="id,school_id,first_name,middle_name,last_name",
        )
        return {str(row["id"]): row for row in rows}


def voter_display_name(voter: dict[str, Any] | None) -> str:
    """Build a candidate display name from the linked voter record."""
    if not voter:
        return "Unknown candidate"
    parts = [voter.get("first_name"), voter.get("middle_name"), voter.get("last_name")]
    return " ".join(str(part).strip() for part in parts if part and str(part).strip())

