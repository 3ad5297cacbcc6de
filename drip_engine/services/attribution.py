"""Attribution & conversion aggregator — event log, touch attribution, funnel analytics."""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from drip_engine import supabase_client as db
from drip_engine.clock import parse_ts, to_iso, utcnow
from drip_engine.config import (
    ANALYTICS_DEFAULT_DAYS,
    ANALYTICS_TIMEOUT_SECONDS,
    EVENT_RETENTION_DAYS,
)
from drip_engine.errors import Conflict, DependencyUnavailable, NotFound, ValidationFailure

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "view",
    "start",
    "complete",
    "registration",
    "optin",
    "purchase",
    "upsell_accept",
    "checkout_start",
    "unsubscribe",
    "tag_added",
    "webinar_attend",
    "email_open",
    "email_click",
    "video_progress",
    "sequence_complete",
    "custom",
)

CONVERSION_TYPES = frozenset({
    "optin",
    "purchase",
    "upsell_accept",
    "sequence_complete",
    "webinar_attend",
})

# Events whose value is revenue
REVENUE_TYPES = frozenset({"purchase", "upsell_accept"})

SOURCE_FIELDS = ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term", "referral_code")
UNKNOWN_SOURCE = "unknown"

_NUMBER = (int, float)

_COMMON_METADATA = {"url": str, "referrer": str, "user_agent": str}
_PAYMENT_METADATA = {"amount": _NUMBER, "currency": str, "product_id": str, "order_id": str}

METADATA_SCHEMA = {
    "view": {},
    "start": {"time_spent_minutes": _NUMBER},
    "complete": {"score": _NUMBER, "watch_percent": _NUMBER, "time_spent_minutes": _NUMBER},
    "registration": {"name": str},
    "optin": {"form_id": str, "list": str},
    "purchase": _PAYMENT_METADATA,
    "upsell_accept": _PAYMENT_METADATA,
    "checkout_start": {"amount": _NUMBER, "currency": str, "product_id": str},
    "unsubscribe": {"reason": str},
    "tag_added": {"tag": str},
    "webinar_attend": {"webinar_id": str, "minutes_attended": _NUMBER},
    "email_open": {"message_id": str, "template": str},
    "email_click": {"message_id": str, "template": str, "link": str},
    "video_progress": {"video_id": str, "watch_percent": _NUMBER},
    "sequence_complete": {"points": _NUMBER},
    "custom": {"name": str, "properties": dict},
}

REQUIRED_METADATA = {"tag_added": ("tag",)}


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def validate_metadata(event_type: str, metadata: dict | None) -> dict:
    """Check metadata against the allow-list for its event type."""
    metadata = dict(metadata or {})
    allowed = {**_COMMON_METADATA, **METADATA_SCHEMA[event_type]}
    for key, value in metadata.items():
        expected = allowed.get(key)
        if expected is None:
            raise ValidationFailure(f"Unknown metadata key '{key}' for {event_type} events")
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ValidationFailure(f"Metadata '{key}' has the wrong type for {event_type} events")
    for key in REQUIRED_METADATA.get(event_type, ()):
        if not metadata.get(key):
            raise ValidationFailure(f"{event_type} events require metadata '{key}'")
    return metadata


def normalize_source(source: dict | None) -> dict:
    """Fill every utm field; a missing source lands in the 'unknown' bucket."""
    source = source or {}
    normalized = {field: str(source.get(field) or "").strip() for field in SOURCE_FIELDS}
    if not normalized["utm_source"]:
        normalized["utm_source"] = UNKNOWN_SOURCE
    return normalized


def has_source(source: dict | None) -> bool:
    return bool(source) and (source.get("utm_source") or UNKNOWN_SOURCE) != UNKNOWN_SOURCE


def apply_touch(participant: dict, source: dict | None, timestamp: datetime) -> bool:
    """Apply an event's source to first/last-touch attribution. Returns True if changed.

    First touch is set once and never overwritten. Last touch follows the most
    recent event that carries a source.
    """
    if not has_source(source):
        return False

    touch = {
        "source": source["utm_source"],
        "campaign": source.get("utm_campaign") or "",
        "timestamp": to_iso(timestamp),
    }
    attribution = participant.setdefault("attribution", {})
    changed = False
    if not attribution.get("first_touch"):
        attribution["first_touch"] = touch
        changed = True

    last = attribution.get("last_touch")
    last_at = parse_ts(last["timestamp"]) if last else None
    if last_at is None or timestamp >= last_at:
        if last != touch:
            attribution["last_touch"] = touch
            changed = True
    return changed


def _event_value(event_type: str, event: dict, metadata: dict) -> float | None:
    if event_type in REVENUE_TYPES:
        amount = metadata.get("amount", event.get("value"))
        if amount is None:
            raise ValidationFailure(f"{event_type} events require an amount")
        return float(amount)
    value = event.get("value")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, _NUMBER):
        raise ValidationFailure("value must be a number")
    return float(value)


def build_event(event: dict, now: datetime | None = None) -> dict:
    """Validate an incoming event and return the row to append to the log."""
    event_type = event.get("type")
    if event_type not in EVENT_TYPES:
        raise ValidationFailure(f"Unknown event type: {event_type}")

    metadata = validate_metadata(event_type, event.get("metadata"))

    item_order = event.get("item_order")
    if item_order is not None and (isinstance(item_order, bool) or not isinstance(item_order, int)):
        raise ValidationFailure("item_order must be an integer")

    try:
        timestamp = parse_ts(event.get("timestamp")) or now or utcnow()
    except (TypeError, ValueError):
        raise ValidationFailure("timestamp must be an ISO-8601 timestamp")

    participant_id = event.get("participant_id")
    return {
        "id": event.get("id") or str(uuid.uuid4()),
        "sequence_id": event.get("sequence_id"),
        "participant_id": participant_id,
        "session_id": event.get("session_id") or participant_id or str(uuid.uuid4()),
        "type": event_type,
        "item_order": item_order,
        "metadata": metadata,
        "source": normalize_source(event.get("source")),
        "value": _event_value(event_type, event, metadata),
        "is_conversion": event_type in CONVERSION_TYPES,
        "timestamp": to_iso(timestamp),
        "expires_at": to_iso(timestamp + timedelta(days=EVENT_RETENTION_DAYS)),
    }


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------

def log_event(sequence_id: str, event_type: str, participant: dict | None = None,
              item_order: int | None = None, metadata: dict | None = None,
              source: dict | None = None, now: datetime | None = None) -> dict | None:
    """Append an engine-emitted event after a progression write.

    The participant write is already durable, so a failed insert is logged
    rather than raised.
    """
    row = build_event({
        "sequence_id": sequence_id,
        "participant_id": participant["id"] if participant else None,
        "type": event_type,
        "item_order": item_order,
        "metadata": metadata,
        "source": source,
    }, now)
    try:
        with db.store_errors("log event"):
            return db.insert_event(row)
    except DependencyUnavailable:
        logger.exception("Could not log %s event for sequence %s", event_type, sequence_id)
        return None


def record_event(event: dict, now: datetime | None = None) -> dict:
    """Record an incoming behavioral event.

    The event is appended to the log, then applied to its participant (touch
    attribution and exit conditions) through the progression write path.
    An event whose id is already logged is not appended again but is still
    applied, so a client may retry a delivery that failed part way.
    """
    from drip_engine.services import progression

    now = now or utcnow()
    row = build_event(event, now)

    participant = None
    if row["participant_id"]:
        with db.store_errors("load participant"):
            participant = db.get_participant(row["participant_id"])
        if not participant:
            raise NotFound(f"Participant {row['participant_id']} not found")
        row["sequence_id"] = row["sequence_id"] or participant["sequence_id"]

    with db.store_errors("record event"):
        try:
            saved = db.insert_event(row) or row
        except Conflict:
            saved = db.get_event(row["id"]) or row
            logger.info("Event %s already logged, reapplying", row["id"])

    if participant:
        progression.apply_event(participant["id"], saved, now=now)

    if saved["is_conversion"]:
        logger.info("Conversion %s recorded (sequence=%s participant=%s value=%s)",
                    saved["type"], saved["sequence_id"], saved["participant_id"], saved["value"])
    return saved


def purge_expired_events(now: datetime | None = None) -> int:
    """Delete events past their retention window. Returns rows deleted."""
    cutoff = to_iso(now or utcnow())
    with db.store_errors("purge events"):
        deleted = db.delete_expired_events(cutoff)
    if deleted:
        db.log_action("events_purged", "event", "", f"{deleted} events expired before {cutoff}")
    logger.info("Purged %d expired events", deleted)
    return deleted


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

def default_range(start: datetime | None = None, end: datetime | None = None) -> tuple[str, str]:
    """Resolve a query range; defaults to the last ANALYTICS_DEFAULT_DAYS days."""
    end = end or utcnow()
    start = start or end - timedelta(days=ANALYTICS_DEFAULT_DAYS)
    if start > end:
        raise ValidationFailure("start must be before end")
    return to_iso(start), to_iso(end)


def get_funnel_analytics(sequence_id: str, start: datetime | None = None,
                         end: datetime | None = None) -> dict:
    """Per event type: raw count, unique sessions and total value."""
    start_iso, end_iso = default_range(start, end)
    with db.store_errors("load events"):
        events = db.get_events(start_iso, end_iso, sequence_id=sequence_id,
                               columns="type, session_id, value, is_conversion")

    counts: dict[str, int] = defaultdict(int)
    sessions: dict[str, set] = defaultdict(set)
    values: dict[str, float] = defaultdict(float)
    for e in events:
        counts[e["type"]] += 1
        sessions[e["type"]].add(e["session_id"])
        values[e["type"]] += float(e.get("value") or 0)

    by_type = {
        t: {"count": counts[t], "unique_sessions": len(sessions[t]), "value": round(values[t], 2)}
        for t in sorted(counts)
    }
    return {
        "sequence_id": sequence_id,
        "range": {"start": start_iso, "end": end_iso},
        "events": by_type,
        "total_events": len(events),
        "unique_sessions": len({e["session_id"] for e in events}),
        "conversions": sum(1 for e in events if e.get("is_conversion")),
        "total_value": round(sum(values.values()), 2),
    }


def get_step_conversion_rates(sequence_id: str, start: datetime | None = None,
                              end: datetime | None = None) -> list[dict]:
    """Per item order: unique-session completes over unique-session views.

    Unique sessions, not raw counts, so a session reloading a page counts once.
    drop_off is the share of the previous step's viewers that never viewed this one.
    """
    start_iso, end_iso = default_range(start, end)
    with db.store_errors("load events"):
        events = db.get_events(start_iso, end_iso, sequence_id=sequence_id,
                               types=["view", "complete"],
                               columns="type, item_order, session_id")

    views: dict[int, set] = defaultdict(set)
    completes: dict[int, set] = defaultdict(set)
    for e in events:
        if e.get("item_order") is None:
            continue
        bucket = views if e["type"] == "view" else completes
        bucket[e["item_order"]].add(e["session_id"])

    steps = []
    for order in sorted(set(views) | set(completes)):
        n_views = len(views[order])
        n_completes = len(completes[order])
        steps.append({
            "item_order": order,
            "views": n_views,
            "completions": n_completes,
            "rate": round(n_completes / n_views * 100, 2) if n_views else 0.0,
            "drop_off": 0.0,
        })

    for prev, step in zip(steps, steps[1:]):
        if prev["views"]:
            step["drop_off"] = round((prev["views"] - step["views"]) / prev["views"] * 100, 2)
    return steps


def get_revenue_by_source(start: datetime | None = None, end: datetime | None = None,
                          sequence_id: str | None = None) -> list[dict]:
    """Purchases grouped by (utm_source, utm_campaign), highest revenue first."""
    start_iso, end_iso = default_range(start, end)
    with db.store_errors("load events"):
        events = db.get_events(start_iso, end_iso, sequence_id=sequence_id,
                               types=["purchase"], columns="source, value")

    groups: dict[tuple[str, str], dict] = {}
    for e in events:
        source = e.get("source") or {}
        key = (source.get("utm_source") or UNKNOWN_SOURCE, source.get("utm_campaign") or "")
        group = groups.setdefault(key, {"revenue": 0.0, "orders": 0})
        group["revenue"] += float(e.get("value") or 0)
        group["orders"] += 1

    rows = [
        {
            "utm_source": source,
            "utm_campaign": campaign,
            "revenue": round(g["revenue"], 2),
            "orders": g["orders"],
            "average_order_value": round(g["revenue"] / g["orders"], 2) if g["orders"] else 0.0,
        }
        for (source, campaign), g in groups.items()
    ]
    rows.sort(key=lambda r: (-r["revenue"], r["utm_source"], r["utm_campaign"]))
    return rows


def get_sequence_stats(sequence_id: str, start: datetime | None = None,
                       end: datetime | None = None) -> dict:
    """Participant outcomes for a sequence.

    Rates are percentages of every registered participant. Per-item completions
    count participants who completed that item; revenue sums purchase and
    upsell events in the range.
    """
    start_iso, end_iso = default_range(start, end)
    with db.store_errors("load participants"):
        sequence = db.get_sequence_row(sequence_id) or {"items": []}
        participants = db.select_all(
            "dp_participants",
            columns="id, status, completed_at, converted_at, item_progress",
            match={"sequence_id": sequence_id},
        )
    with db.store_errors("load events"):
        revenue_events = db.get_events(start_iso, end_iso, sequence_id=sequence_id,
                                       types=sorted(REVENUE_TYPES), columns="value")

    total = len(participants)

    def rate(n: int) -> float:
        return round(n / total * 100, 2) if total else 0.0

    by_status: dict[str, int] = defaultdict(int)
    for p in participants:
        by_status[p["status"]] += 1
    completed = sum(1 for p in participants if p.get("completed_at"))
    converted = sum(1 for p in participants if p.get("converted_at"))

    items = []
    for item in sorted(sequence["items"], key=lambda i: i["order"]):
        completions = sum(
            1 for p in participants
            if ((p.get("item_progress") or {}).get(item["id"]) or {}).get("status") == "completed"
        )
        items.append({
            "item_id": item["id"],
            "item_order": item["order"],
            "completions": completions,
            "completion_rate": rate(completions),
        })

    return {
        "total_participants": total,
        "by_status": dict(by_status),
        "completed": completed,
        "completion_rate": rate(completed),
        "converted": converted,
        "conversion_rate": rate(converted),
        "total_revenue": round(sum(float(e.get("value") or 0) for e in revenue_events), 2),
        "items": items,
    }


async def get_analytics(sequence_id: str, start: datetime | None = None,
                        end: datetime | None = None,
                        timeout: float | None = None) -> dict:
    """Analytics snapshot for a sequence.

    Each section runs in a worker thread under the caller's timeout. A section
    that times out or hits a store failure is reported in ``errors`` and the
    snapshot is marked partial; this never raises for those failures.
    """
    start_iso, end_iso = default_range(start, end)
    start_dt, end_dt = parse_ts(start_iso), parse_ts(end_iso)
    timeout = ANALYTICS_TIMEOUT_SECONDS if timeout is None else timeout

    sections = {
        "funnel": (get_funnel_analytics, (sequence_id, start_dt, end_dt)),
        "steps": (get_step_conversion_rates, (sequence_id, start_dt, end_dt)),
        "revenue_by_source": (get_revenue_by_source, (start_dt, end_dt, sequence_id)),
        "stats": (get_sequence_stats, (sequence_id, start_dt, end_dt)),
    }

    async def run(fn, args):
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout)

    results = await asyncio.gather(
        *(run(fn, args) for fn, args in sections.values()),
        return_exceptions=True,
    )

    snapshot: dict = {
        "sequence_id": sequence_id,
        "range": {"start": start_iso, "end": end_iso},
        "partial": False,
        "errors": {},
    }
    for name, result in zip(sections, results):
        if isinstance(result, asyncio.TimeoutError):
            logger.warning("Analytics section %s timed out after %ss", name, timeout)
            snapshot["errors"][name] = "timeout"
            snapshot[name] = None
        elif isinstance(result, DependencyUnavailable):
            logger.warning("Analytics section %s failed: %s", name, result)
            snapshot["errors"][name] = str(result)
            snapshot[name] = None
        elif isinstance(result, BaseException):
            raise result
        else:
            snapshot[name] = result
    snapshot["partial"] = bool(snapshot["errors"])
    return snapshot
