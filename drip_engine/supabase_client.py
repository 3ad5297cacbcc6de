"""Supabase connection and query helpers for all dp_* tables."""

import logging
import threading
from contextlib import contextmanager
from typing import Any

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from drip_engine.config import SUPABASE_SERVICE_KEY, SUPABASE_URL
from drip_engine.errors import Conflict, DependencyUnavailable

# Postgres error code for unique_violation
UNIQUE_VIOLATION = "23505"

logger = logging.getLogger(__name__)

_client: Client | None = None
_client_lock = threading.Lock()


def get_client() -> Client:
    """Return the Supabase client singleton (thread-safe)."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                if not SUPABASE_URL or not SUPABASE_SERVICE_KEY:
                    raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
                _client = create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY)
    return _client


@contextmanager
def store_errors(action: str):
    """Translate transport and PostgREST failures into DependencyUnavailable."""
    try:
        yield
    except APIError as e:
        raise DependencyUnavailable(f"{action} failed: {e.message or e}") from e
    except httpx.HTTPError as e:
        raise DependencyUnavailable(f"{action} failed: {e}") from e


# ---------------------------------------------------------------------------
# Generic helpers
# ---------------------------------------------------------------------------

def _table(name: str):
    """Return a table query builder."""
    return get_client().table(name)


def _apply_filters(q, match: dict | None = None, gte: dict | None = None,
                   lte: dict | None = None, in_: dict | None = None):
    for k, v in (match or {}).items():
        q = q.eq(k, v)
    for k, v in (gte or {}).items():
        q = q.gte(k, v)
    for k, v in (lte or {}).items():
        q = q.lte(k, v)
    for k, v in (in_ or {}).items():
        q = q.in_(k, list(v))
    return q


def insert(table: str, data: dict) -> dict:
    """Insert a row and return it."""
    result = _table(table).insert(data).execute()
    return result.data[0] if result.data else {}


def insert_unique(table: str, data: dict) -> dict:
    """Insert a row, raising Conflict when a unique constraint rejects it."""
    try:
        return insert(table, data)
    except APIError as e:
        if e.code == UNIQUE_VIOLATION:
            raise Conflict(f"Duplicate row in {table}: {e.message}") from e
        raise


def update(table: str, data: dict, match: dict) -> dict:
    """Update rows matching conditions. Returns the first updated row or {}."""
    q = _table(table).update(data)
    for k, v in match.items():
        q = q.eq(k, v)
    result = q.execute()
    return result.data[0] if result.data else {}


def update_unique(table: str, data: dict, match: dict) -> dict:
    """Update rows, raising Conflict when a unique constraint rejects the change."""
    try:
        return update(table, data, match)
    except APIError as e:
        if e.code == UNIQUE_VIOLATION:
            raise Conflict(f"Duplicate row in {table}: {e.message}") from e
        raise


def delete_before(table: str, column: str, cutoff: str) -> list:
    """Delete rows whose column value is strictly before the cutoff."""
    result = _table(table).delete().lt(column, cutoff).execute()
    return result.data or []


def select(table: str, columns: str = "*", match: dict | None = None,
           order: str | None = None, order_desc: bool = False,
           limit: int | None = None, offset: int | None = None,
           gte: dict | None = None, lte: dict | None = None,
           in_: dict | None = None) -> list[dict]:
    """Select rows with optional filtering, ordering, and pagination."""
    q = _table(table).select(columns)
    q = _apply_filters(q, match, gte, lte, in_)
    if order:
        q = q.order(order, desc=order_desc)
    if offset:
        q = q.range(offset, offset + (limit or 100) - 1)
    elif limit:
        q = q.limit(limit)
    result = q.execute()
    return result.data or []


def select_all(table: str, columns: str = "*", match: dict | None = None,
               order: str = "id", gte: dict | None = None, lte: dict | None = None,
               in_: dict | None = None, page_size: int = 1000) -> list[dict]:
    """Select every matching row, paging through PostgREST's row cap."""
    rows: list[dict] = []
    offset = 0
    while True:
        q = _table(table).select(columns)
        q = _apply_filters(q, match, gte, lte, in_)
        q = q.order(order).range(offset, offset + page_size - 1)
        page = q.execute().data or []
        rows.extend(page)
        if len(page) < page_size:
            return rows
        offset += page_size


def select_one(table: str, columns: str = "*", match: dict | None = None) -> dict | None:
    """Select a single row."""
    rows = select(table, columns, match, limit=1)
    return rows[0] if rows else None


def count(table: str, match: dict | None = None) -> int:
    """Count rows matching conditions."""
    q = _table(table).select("*", count="exact")
    if match:
        for k, v in match.items():
            q = q.eq(k, v)
    result = q.execute()
    return result.count or 0


# ---------------------------------------------------------------------------
# Sequences
# ---------------------------------------------------------------------------

def get_sequence_row(sequence_id: str) -> dict | None:
    """Get a sequence definition by UUID."""
    return select_one("dp_sequences", match={"id": sequence_id})


def get_sequence_row_by_slug(slug: str) -> dict | None:
    """Get a sequence definition by slug."""
    return select_one("dp_sequences", match={"slug": slug})


def update_sequence_if_version(sequence_id: str, data: dict, version: int) -> dict:
    """Compare-and-swap a sequence row on its version. Returns {} when stale."""
    return update_unique("dp_sequences", data, {"id": sequence_id, "version": version})


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------

def get_participant(participant_id: str) -> dict | None:
    """Get a participant by UUID."""
    return select_one("dp_participants", match={"id": participant_id})


def get_participant_by_email(sequence_id: str, email: str) -> dict | None:
    """Get the participant for a (sequence, identity) pair."""
    return select_one("dp_participants", match={"sequence_id": sequence_id, "email": email})


def update_participant_if_version(participant_id: str, data: dict, version: int) -> dict:
    """Compare-and-swap a participant row on its version. Returns {} when stale."""
    return update("dp_participants", data, {"id": participant_id, "version": version})


def get_participants(sequence_id: str, status: str | None = None,
                     limit: int | None = None, offset: int | None = None) -> list[dict]:
    """Get participants for a sequence, newest registrations first."""
    match: dict[str, Any] = {"sequence_id": sequence_id}
    if status:
        match["status"] = status
    return select("dp_participants", match=match, order="registered_at",
                  order_desc=True, limit=limit, offset=offset)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def insert_event(data: dict) -> dict:
    """Append an event to the log. Raises Conflict when the event id is already logged."""
    return insert_unique("dp_events", data)


def get_event(event_id: str) -> dict | None:
    """Get a logged event by id."""
    return select_one("dp_events", match={"id": event_id})


def get_events(start: str, end: str, sequence_id: str | None = None,
               types: list[str] | None = None, columns: str = "*") -> list[dict]:
    """Get events with timestamp in [start, end], optionally by sequence and type."""
    match = {"sequence_id": sequence_id} if sequence_id else None
    in_ = {"type": types} if types else None
    return select_all("dp_events", columns=columns, match=match,
                      gte={"timestamp": start}, lte={"timestamp": end},
                      in_=in_, order="timestamp")


def delete_expired_events(cutoff: str) -> int:
    """Delete events whose expires_at is before the cutoff. Returns count."""
    return len(delete_before("dp_events", "expires_at", cutoff))


# ---------------------------------------------------------------------------
# Leads (identity resolution)
# ---------------------------------------------------------------------------

def get_lead_by_email(email: str) -> dict | None:
    """Get a lead/CRM record by email."""
    return select_one("dp_leads", match={"email": email})


# ---------------------------------------------------------------------------
# Audit Log
# ---------------------------------------------------------------------------

def log_action(action: str, entity_type: str = "", entity_id: str = "", details: str = "") -> dict:
    """Log an operator-visible action.

    Audit writes follow state changes that are already durable, so a failed
    write is logged and dropped rather than raised.
    """
    try:
        return insert("dp_audit_log", {
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": details,
        })
    except (APIError, httpx.HTTPError) as e:
        logger.warning("Audit log write failed for %s %s: %s", action, entity_id, e)
        return {}
