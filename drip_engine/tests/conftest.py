"""Shared fixtures for drip engine tests.

Provides:
- fake_db: patches supabase_client with an in-memory fake (unique constraints,
  version-checked updates, range and IN filters)
- client: sync TestClient wired to the FastAPI app
- sample data factories for sequences, participants and events
"""

import copy
import os
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from postgrest.exceptions import APIError

# Set env vars before any drip_engine imports
os.environ.setdefault("SUPABASE_URL", "https://fake.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "fake-key")
os.environ.setdefault("WEBHOOK_SECRET", "test-secret-123")
os.environ.setdefault("RESEND_API_KEY", "")

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

# Unique constraints enforced on insert and update, per table
UNIQUE_KEYS = {
    "dp_sequences": [("slug",)],
    "dp_participants": [("sequence_id", "email")],
    "dp_events": [("id",)],
}


# ---------------------------------------------------------------------------
# In-memory fake Supabase
# ---------------------------------------------------------------------------

class FakeQueryResult:
    def __init__(self, data=None, count=None):
        self.data = data or []
        self.count = count


class FakeQueryBuilder:
    """Mimics the supabase-py query builder chain."""

    def __init__(self, store, table_name):
        self._store = store
        self._table = table_name
        self._filters = []
        self._order_col = None
        self._order_desc = False
        self._limit_val = None
        self._range_start = None
        self._range_end = None
        self._count_mode = None
        self._update_data = None
        self._delete_mode = False
        self._insert_data = None

    def select(self, columns="*", count=None):
        self._count_mode = count
        return self

    def insert(self, data):
        self._insert_data = data
        return self

    def update(self, data):
        self._update_data = data
        return self

    def delete(self):
        self._delete_mode = True
        return self

    def eq(self, col, val):
        self._filters.append(("eq", col, val))
        return self

    def gte(self, col, val):
        self._filters.append(("gte", col, val))
        return self

    def lte(self, col, val):
        self._filters.append(("lte", col, val))
        return self

    def lt(self, col, val):
        self._filters.append(("lt", col, val))
        return self

    def in_(self, col, values):
        self._filters.append(("in", col, list(values)))
        return self

    def order(self, col, desc=False):
        self._order_col = col
        self._order_desc = desc
        return self

    def limit(self, n):
        self._limit_val = n
        return self

    def range(self, start, end):
        self._range_start = start
        self._range_end = end
        return self

    def _match(self, row):
        for op, col, val in self._filters:
            row_val = row.get(col)
            if op == "eq" and row_val != val:
                return False
            if op == "in" and row_val not in val:
                return False
            if op == "gte" and (row_val is None or str(row_val) < str(val)):
                return False
            if op == "lte" and (row_val is None or str(row_val) > str(val)):
                return False
            if op == "lt" and (row_val is None or str(row_val) >= str(val)):
                return False
        return True

    def _check_unique(self, table, row, skip=None):
        for cols in UNIQUE_KEYS.get(self._table, []):
            if any(all(existing.get(c) == row.get(c) for c in cols)
                   for existing in table if existing is not skip):
                raise APIError({
                    "code": "23505",
                    "message": f"duplicate key value violates unique constraint on {cols}",
                    "details": "",
                    "hint": "",
                })

    def execute(self):
        table = self._store[self._table]

        if self._insert_data is not None:
            row = copy.deepcopy(self._insert_data)
            if "id" not in row:
                row["id"] = str(uuid.uuid4())
            self._check_unique(table, row)
            table.append(row)
            return FakeQueryResult(data=[copy.deepcopy(row)])

        if self._update_data is not None:
            updated = []
            for row in table:
                if self._match(row):
                    self._check_unique(table, {**row, **self._update_data}, skip=row)
                    row.update(copy.deepcopy(self._update_data))
                    updated.append(copy.deepcopy(row))
            return FakeQueryResult(data=updated)

        if self._delete_mode:
            removed = [r for r in table if self._match(r)]
            remaining = [r for r in table if not self._match(r)]
            table.clear()
            table.extend(remaining)
            return FakeQueryResult(data=removed)

        # SELECT
        rows = [copy.deepcopy(r) for r in table if self._match(r)]

        if self._order_col:
            rows.sort(
                key=lambda r: str(r.get(self._order_col) or ""),
                reverse=self._order_desc,
            )

        total = len(rows)

        if self._range_start is not None:
            rows = rows[self._range_start:self._range_end + 1]
        elif self._limit_val is not None:
            rows = rows[:self._limit_val]

        return FakeQueryResult(
            data=rows,
            count=total if self._count_mode else None,
        )


class FakeDB:
    """In-memory store keyed by table name."""

    def __init__(self):
        self.store = defaultdict(list)

    def table(self, name):
        return FakeQueryBuilder(self.store, name)

    def add(self, table, row):
        """Seed a row directly and return it."""
        self.store[table].append(copy.deepcopy(row))
        return row

    def row(self, table, row_id):
        return next((r for r in self.store[table] if r["id"] == row_id), None)

    def clear(self):
        self.store.clear()


@pytest.fixture
def fake_db():
    """Provides a clean in-memory DB and patches supabase_client._table."""
    from drip_engine.services.sequence_model import clear_cache

    db = FakeDB()
    clear_cache()

    def fake_table(name):
        return FakeQueryBuilder(db.store, name)

    with patch("drip_engine.supabase_client._table", side_effect=fake_table):
        with patch("drip_engine.supabase_client.get_client", return_value=MagicMock()):
            yield db
    clear_cache()


@pytest.fixture
def client(fake_db):
    """Sync test client for FastAPI app with mocked DB."""
    from contextlib import asynccontextmanager

    from fastapi.testclient import TestClient

    from drip_engine.app import create_app

    @asynccontextmanager
    async def noop_lifespan(app):
        yield

    app = create_app()
    # Keep APScheduler out of tests
    app.router.lifespan_context = noop_lifespan

    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer test-secret-123"}


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------

def make_items(n, delay_hours=24, **overrides):
    """n items; item 0 immediate, item k unlocks k * delay_hours after registration."""
    items = []
    for order in range(n):
        rule = {"type": "immediate"} if order == 0 else {
            "type": "delay_from_registration", "delay_hours": order * delay_hours,
        }
        items.append({
            "id": f"day-{order + 1}",
            "title": f"Day {order + 1}",
            "order": order,
            "unlock_rule": rule,
            **overrides,
        })
    return items


def make_sequence_definition(**overrides):
    defaults = {
        "name": "Three Day Challenge",
        "slug": f"three-day-{uuid.uuid4().hex[:8]}",
        "kind": "challenge",
        "status": "published",
        "delivery_mode": "drip_from_registration",
        "timezone": "UTC",
        "items": make_items(3),
        "exit_conditions": {"on_purchase": True, "on_unsubscribe": True, "on_tags": ["refunded"]},
    }
    defaults.update(overrides)
    return defaults


def make_sequence(**overrides):
    """A normalized, stored sequence row."""
    from drip_engine.services.sequence_model import validate_sequence

    sequence_id = overrides.pop("id", str(uuid.uuid4()))
    version = overrides.pop("version", 1)
    return {
        "id": sequence_id,
        **validate_sequence(make_sequence_definition(**overrides)),
        "version": version,
        "created_by": "test",
        "created_at": NOW.isoformat(),
        "updated_at": NOW.isoformat(),
    }


def make_participant(sequence, **overrides):
    registered_at = overrides.pop("registered_at", NOW)
    progress = {item["id"]: {"status": "locked"} for item in sequence["items"]}
    if sequence["items"]:
        progress[sequence["items"][0]["id"]] = {
            "status": "unlocked", "unlocked_at": registered_at.isoformat(),
        }
    defaults = {
        "id": str(uuid.uuid4()),
        "sequence_id": sequence["id"],
        "email": "a@x.com",
        "user_id": None,
        "lead_id": None,
        "name": "Alex",
        "tags": [],
        "status": "active",
        "registered_at": registered_at.isoformat(),
        "last_active_at": registered_at.isoformat(),
        "completed_at": None,
        "converted_at": None,
        "current_item_order": 0,
        "item_progress": progress,
        "engagement": {
            "streak_days": 1,
            "longest_streak": 1,
            "total_time_spent_minutes": 0,
            "login_count": 1,
            "last_active_at": registered_at.isoformat(),
            "streak_updated_at": registered_at.isoformat(),
        },
        "points": 0,
        "badges": [],
        "point_awards": [],
        "attribution": {"first_touch": None, "last_touch": None},
        "version": 1,
        "created_at": registered_at.isoformat(),
        "updated_at": registered_at.isoformat(),
    }
    defaults.update(overrides)
    return defaults


def make_event(**overrides):
    timestamp = overrides.pop("timestamp", NOW)
    defaults = {
        "id": str(uuid.uuid4()),
        "sequence_id": None,
        "participant_id": None,
        "session_id": str(uuid.uuid4()),
        "type": "view",
        "item_order": 0,
        "metadata": {},
        "source": {"utm_source": "unknown", "utm_medium": "", "utm_campaign": "",
                   "utm_content": "", "utm_term": "", "referral_code": ""},
        "value": None,
        "is_conversion": False,
        "timestamp": timestamp.isoformat(),
        "expires_at": (timestamp + timedelta(days=730)).isoformat(),
    }
    defaults.update(overrides)
    return defaults
