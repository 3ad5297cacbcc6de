"""Sequence model — validation, persistence and versioned edits of sequence definitions.

A sequence is a funnel (ordered steps) or a challenge (ordered days). Item
``order`` values always form a contiguous 0..N-1 permutation; the only way to
change them is ``reindex_items`` with the full new ordering.
"""

import copy
import logging
import re
import threading
import time
import uuid
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from drip_engine import supabase_client as db
from drip_engine.clock import parse_ts, to_iso, utcnow
from drip_engine.config import DEFAULT_COMPLETION_BONUS, DEFAULT_POINTS, DEFAULT_TIMEZONE
from drip_engine.errors import Conflict, NotFound, ValidationFailure
from drip_engine.services.engagement import BADGE_CRITERIA

logger = logging.getLogger(__name__)

SEQUENCE_KINDS = ("funnel", "challenge")
SEQUENCE_STATUSES = ("draft", "published", "paused", "archived")
DELIVERY_MODES = ("all_at_once", "drip_from_registration", "drip_from_completion", "hybrid")
UNLOCK_RULE_TYPES = (
    "immediate",
    "delay_from_registration",
    "delay_from_previous",
    "calendar_time_of_day",
)
CONDITION_KEYS = ("required_tags", "excluded_tags", "min_prior_score", "min_score", "min_watch_percent")
DEFAULT_BADGES = ["first_item", "complete_all"]

# Allowed status changes; archived is terminal
_STATUS_TRANSITIONS = {
    "draft": {"published", "archived"},
    "published": {"paused", "archived"},
    "paused": {"published", "archived"},
    "archived": set(),
}

_TIME_OF_DAY_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_ITEM_BADGE_RE = re.compile(r"^complete_item_\d+$")

CACHE_TTL_SECONDS = 60
_cache: dict[str, tuple[float, dict]] = {}
_cache_lock = threading.Lock()


def slugify(value: str) -> str:
    value = (value or "").strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-{2,}", "-", value).strip("-")
    return value or "sequence"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _number(value, field: str, minimum: float | None = 0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationFailure(f"{field} must be a number")
    if minimum is not None and value < minimum:
        raise ValidationFailure(f"{field} must be >= {minimum}")
    return value


def _string_list(value, field: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise ValidationFailure(f"{field} must be a list of non-empty strings")
    return list(value)


def _timestamp(value, field: str) -> str | None:
    if value in (None, ""):
        return None
    try:
        return to_iso(parse_ts(value))
    except (TypeError, ValueError):
        raise ValidationFailure(f"{field} must be an ISO-8601 timestamp")


def parse_time_of_day(value: str) -> tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)."""
    m = _TIME_OF_DAY_RE.match(value or "")
    if not m:
        raise ValidationFailure(f"time_of_day must be HH:MM, got {value!r}")
    return int(m.group(1)), int(m.group(2))


def _normalize_rule(rule: dict | None, order: int, delivery_mode: str) -> dict:
    rule = dict(rule or {})
    rule_type = rule.get("type", "immediate" if order == 0 else "delay_from_registration")
    if rule_type not in UNLOCK_RULE_TYPES:
        raise ValidationFailure(f"Unknown unlock rule type: {rule_type}")

    delay = rule.get("delay_hours")
    if delay is None:
        # Day N of a registration drip opens N*24h after signup unless told otherwise
        delay = order * 24 if delivery_mode == "drip_from_registration" else 0
    delay = _number(delay, "unlock_rule.delay_hours")

    time_of_day = rule.get("time_of_day")
    if rule_type == "calendar_time_of_day" and not time_of_day:
        raise ValidationFailure("calendar_time_of_day rules require time_of_day")
    if time_of_day:
        parse_time_of_day(time_of_day)

    return {"type": rule_type, "delay_hours": delay, "time_of_day": time_of_day}


def _normalize_conditions(conditions: dict | None) -> dict:
    conditions = dict(conditions or {})
    unknown = set(conditions) - set(CONDITION_KEYS)
    if unknown:
        raise ValidationFailure(f"Unknown item conditions: {sorted(unknown)}")

    normalized = {}
    for key in ("required_tags", "excluded_tags"):
        if conditions.get(key):
            normalized[key] = _string_list(conditions[key], f"conditions.{key}")
    for key in ("min_prior_score", "min_score"):
        if conditions.get(key) is not None:
            normalized[key] = _number(conditions[key], f"conditions.{key}", minimum=None)
    if conditions.get("min_watch_percent") is not None:
        pct = _number(conditions["min_watch_percent"], "conditions.min_watch_percent")
        if pct > 100:
            raise ValidationFailure("conditions.min_watch_percent must be <= 100")
        normalized["min_watch_percent"] = pct
    return normalized


def _validate_items(items, delivery_mode: str) -> list[dict]:
    if not isinstance(items, list):
        raise ValidationFailure("items must be a list")

    seen_ids: set[str] = set()
    orders: list[int] = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationFailure("each item must be an object")
        item_id = item.get("id")
        if not isinstance(item_id, str) or not item_id:
            raise ValidationFailure("each item requires an id")
        if item_id in seen_ids:
            raise ValidationFailure(f"Duplicate item id: {item_id}")
        seen_ids.add(item_id)
        order = item.get("order")
        if isinstance(order, bool) or not isinstance(order, int):
            raise ValidationFailure(f"Item {item_id} requires an integer order")
        orders.append(order)

    if sorted(orders) != list(range(len(items))):
        raise ValidationFailure(
            f"Item orders must be contiguous 0..{len(items) - 1} without duplicates, got {sorted(orders)}"
        )

    order_by_id = {item["id"]: item["order"] for item in items}
    normalized = []
    for item in sorted(items, key=lambda i: i["order"]):
        prior = item.get("required_prior_items") or []
        prior = _string_list(prior, f"items[{item['order']}].required_prior_items") if prior else []
        for prior_id in prior:
            if prior_id not in order_by_id:
                raise ValidationFailure(f"Item {item['id']} requires unknown item {prior_id}")
            if order_by_id[prior_id] >= item["order"]:
                raise ValidationFailure(
                    f"Item {item['id']} can only require items that come before it ({prior_id} does not)"
                )
        normalized.append({
            "id": item["id"],
            "title": item.get("title", ""),
            "order": item["order"],
            "unlock_rule": _normalize_rule(item.get("unlock_rule"), item["order"], delivery_mode),
            "required_prior_items": prior,
            "conditions": _normalize_conditions(item.get("conditions")),
        })
    return normalized


def validate_sequence(defn: dict) -> dict:
    """Validate a sequence definition and return its normalized form.

    Raises ValidationFailure on the first problem found.
    """
    if not isinstance(defn, dict):
        raise ValidationFailure("Sequence definition must be an object")

    name = (defn.get("name") or "").strip()
    if not name:
        raise ValidationFailure("name is required")

    kind = defn.get("kind", "funnel")
    if kind not in SEQUENCE_KINDS:
        raise ValidationFailure(f"Unknown sequence kind: {kind}")

    status = defn.get("status", "draft")
    if status not in SEQUENCE_STATUSES:
        raise ValidationFailure(f"Unknown sequence status: {status}")

    delivery_mode = defn.get("delivery_mode", "drip_from_registration")
    if delivery_mode not in DELIVERY_MODES:
        raise ValidationFailure(f"Unknown delivery mode: {delivery_mode}")

    tz_name = defn.get("timezone") or DEFAULT_TIMEZONE
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationFailure(f"Unknown timezone: {tz_name}")

    slug = slugify(defn.get("slug") or name)

    exits = dict(defn.get("exit_conditions") or {})
    exit_conditions = {
        "on_purchase": bool(exits.get("on_purchase", False)),
        "on_unsubscribe": bool(exits.get("on_unsubscribe", True)),
        "on_tags": _string_list(exits["on_tags"], "exit_conditions.on_tags") if exits.get("on_tags") else [],
    }

    reg = dict(defn.get("registration") or {})
    max_participants = reg.get("max_participants")
    if max_participants is not None:
        max_participants = int(_number(max_participants, "registration.max_participants", minimum=1))
    registration = {
        "is_open": bool(reg.get("is_open", True)),
        "opens_at": _timestamp(reg.get("opens_at"), "registration.opens_at"),
        "closes_at": _timestamp(reg.get("closes_at"), "registration.closes_at"),
        "max_participants": max_participants,
    }

    gam = dict(defn.get("gamification") or {})
    points = dict(DEFAULT_POINTS)
    for event_type, amount in (gam.get("points") or {}).items():
        points[event_type] = int(_number(amount, f"gamification.points.{event_type}"))
    badges = _string_list(gam["badges"], "gamification.badges") if gam.get("badges") else list(DEFAULT_BADGES)
    unknown_badges = [b for b in badges if b not in BADGE_CRITERIA and not _ITEM_BADGE_RE.match(b)]
    if unknown_badges:
        raise ValidationFailure(f"Unknown badge criteria: {unknown_badges}")
    gamification = {
        "enabled": bool(gam.get("enabled", True)),
        "points": points,
        "badges": badges,
        "completion_bonus": int(_number(gam.get("completion_bonus", DEFAULT_COMPLETION_BONUS),
                                        "gamification.completion_bonus")),
    }

    notes = dict(defn.get("notifications") or {})
    notifications = {
        "on_register": notes.get("on_register", "welcome"),
        "on_unlock": notes.get("on_unlock", "item_unlocked"),
        "on_complete": notes.get("on_complete", "sequence_completed"),
    }

    return {
        "name": name,
        "slug": slug,
        "kind": kind,
        "status": status,
        "description": defn.get("description", ""),
        "delivery_mode": delivery_mode,
        "timezone": tz_name,
        "items": _validate_items(defn.get("items") or [], delivery_mode),
        "exit_conditions": exit_conditions,
        "registration": registration,
        "gamification": gamification,
        "notifications": notifications,
    }


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

def _cache_put(sequence: dict) -> None:
    with _cache_lock:
        _cache[sequence["id"]] = (time.monotonic(), sequence)


def _cache_get(sequence_id: str) -> dict | None:
    with _cache_lock:
        entry = _cache.get(sequence_id)
    if not entry:
        return None
    cached_at, sequence = entry
    if time.monotonic() - cached_at > CACHE_TTL_SECONDS:
        return None
    return sequence


def clear_cache() -> None:
    with _cache_lock:
        _cache.clear()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_sequence(sequence_id: str) -> dict:
    """Get a sequence definition by ID. Raises NotFound."""
    cached = _cache_get(sequence_id)
    if cached is None:
        with db.store_errors("load sequence"):
            row = db.get_sequence_row(sequence_id)
        if not row:
            raise NotFound(f"Sequence {sequence_id} not found")
        _cache_put(row)
        cached = row
    return copy.deepcopy(cached)


def get_sequence_by_slug(slug: str) -> dict:
    """Get a sequence definition by slug. Raises NotFound."""
    with db.store_errors("load sequence"):
        row = db.get_sequence_row_by_slug(slugify(slug))
    if not row:
        raise NotFound(f"Sequence '{slug}' not found")
    _cache_put(row)
    return copy.deepcopy(row)


def list_sequences(status: str | None = None) -> list[dict]:
    """List sequence definitions, optionally by status."""
    match = {"status": status} if status else None
    with db.store_errors("list sequences"):
        return db.select("dp_sequences", match=match, order="created_at", order_desc=True)


def get_item(sequence: dict, item_id: str) -> dict:
    """Get an item from a sequence by ID. Raises NotFound."""
    for item in sequence["items"]:
        if item["id"] == item_id:
            return item
    raise NotFound(f"Item {item_id} not found in sequence {sequence['id']}")


def get_item_by_order(sequence: dict, order: int) -> dict | None:
    for item in sequence["items"]:
        if item["order"] == order:
            return item
    return None


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def _check_publishable(sequence: dict) -> None:
    if not sequence["items"]:
        raise ValidationFailure("Cannot publish a sequence without items")


def create_sequence(defn: dict, created_by: str = "") -> dict:
    """Validate and persist a new sequence definition (version 1)."""
    normalized = validate_sequence(defn)
    if normalized["status"] == "published":
        _check_publishable(normalized)
    now = to_iso(utcnow())
    row = {
        "id": defn.get("id") or str(uuid.uuid4()),
        **normalized,
        "version": 1,
        "created_by": created_by,
        "created_at": now,
        "updated_at": now,
    }
    with db.store_errors("create sequence"):
        sequence = db.insert_unique("dp_sequences", row)

    db.log_action("sequence_created", "sequence", sequence["id"],
                  f"{sequence['name']} ({sequence['slug']}) with {len(sequence['items'])} items")
    _cache_put(sequence)
    return copy.deepcopy(sequence)


def _save(sequence: dict, changes: dict, action: str, details: str = "",
          extra: dict | None = None) -> dict:
    """Persist a definition edit as a new version (compare-and-swap on version)."""
    merged = {**sequence, **changes}
    normalized = validate_sequence(merged)
    data = {
        **normalized,
        **(extra or {}),
        "version": sequence["version"] + 1,
        "updated_at": to_iso(utcnow()),
    }
    with db.store_errors("update sequence"):
        saved = db.update_sequence_if_version(sequence["id"], data, sequence["version"])
    if not saved:
        raise Conflict(f"Sequence {sequence['id']} was modified concurrently; reload and retry")

    db.log_action(action, "sequence", sequence["id"], details)
    _cache_put(saved)
    return copy.deepcopy(saved)


def update_sequence(sequence_id: str, changes: dict) -> dict:
    """Update sequence settings. Items and status have their own operations."""
    forbidden = {"id", "items", "status", "version"} & set(changes)
    if forbidden:
        raise Conflict(f"Cannot change {sorted(forbidden)} through update_sequence")
    sequence = get_sequence(sequence_id)
    return _save(sequence, changes, "sequence_updated", f"Changed {sorted(changes)}")


def add_item(sequence_id: str, item: dict) -> dict:
    """Append an item at the end of the sequence."""
    sequence = get_sequence(sequence_id)
    next_order = len(sequence["items"])
    if item.get("order") is not None and item["order"] != next_order:
        raise Conflict(
            f"New items are appended at order {next_order}; use reindex_items to reorder"
        )
    new_item = {**item, "id": item.get("id") or str(uuid.uuid4()), "order": next_order}
    return _save(sequence, {"items": sequence["items"] + [new_item]}, "sequence_item_added",
                 f"Item {new_item['id']} at order {next_order}")


def update_item(sequence_id: str, item_id: str, changes: dict) -> dict:
    """Edit an item's title, unlock rule, prerequisites or conditions."""
    sequence = get_sequence(sequence_id)
    current = get_item(sequence, item_id)
    if "order" in changes and changes["order"] != current["order"]:
        raise Conflict("Item order can only change through reindex_items")
    if "id" in changes and changes["id"] != item_id:
        raise Conflict("Item ids are immutable")

    items = [{**i, **changes} if i["id"] == item_id else i for i in sequence["items"]]
    return _save(sequence, {"items": items}, "sequence_item_updated", f"Item {item_id}")


def remove_item(sequence_id: str, item_id: str) -> dict:
    """Remove an item and lay the remaining items out as a full reindex."""
    sequence = get_sequence(sequence_id)
    get_item(sequence, item_id)
    dependents = [i["id"] for i in sequence["items"] if item_id in i["required_prior_items"]]
    if dependents:
        raise Conflict(f"Item {item_id} is required by {dependents}")

    remaining = [i for i in sequence["items"] if i["id"] != item_id]
    items = [{**i, "order": n} for n, i in enumerate(remaining)]
    return _save(sequence, {"items": items}, "sequence_item_removed", f"Item {item_id}")


def reindex_items(sequence_id: str, ordered_item_ids: list[str]) -> dict:
    """Reorder every item at once. ordered_item_ids must be a permutation of all item ids."""
    sequence = get_sequence(sequence_id)
    current_ids = [i["id"] for i in sequence["items"]]
    if len(ordered_item_ids) != len(set(ordered_item_ids)) or set(ordered_item_ids) != set(current_ids):
        raise Conflict("Reindex must list every item id exactly once")

    position = {item_id: n for n, item_id in enumerate(ordered_item_ids)}
    items = [{**i, "order": position[i["id"]]} for i in sequence["items"]]
    return _save(sequence, {"items": items}, "sequence_reindexed", " > ".join(ordered_item_ids))


def set_status(sequence_id: str, status: str) -> dict:
    """Move a sequence through draft → published ⇄ paused → archived."""
    if status not in SEQUENCE_STATUSES:
        raise ValidationFailure(f"Unknown sequence status: {status}")
    sequence = get_sequence(sequence_id)
    if status == sequence["status"]:
        return sequence
    if status not in _STATUS_TRANSITIONS[sequence["status"]]:
        raise Conflict(f"Cannot move sequence from {sequence['status']} to {status}")
    if status == "published":
        _check_publishable(sequence)

    extra = {}
    if status == "published" and not sequence.get("published_at"):
        extra["published_at"] = to_iso(utcnow())
    saved = _save(sequence, {"status": status}, f"sequence_{status}", sequence["name"], extra=extra)
    logger.info("Sequence %s moved to %s", sequence_id, status)
    return saved
