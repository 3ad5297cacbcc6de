"""Progression state machine — registration, access, start/complete, exits.

Every participant mutation goes through ``_mutate``: load the row, apply a
change to a copy, write it back only if the stored version is unchanged, and
retry from a fresh read otherwise. Engagement (streaks, points, badges) is
applied inside the same write; events and notifications go out after it.

Item status only moves forward: locked -> unlocked -> in_progress -> completed.
"""

import copy
import logging
import uuid
from datetime import datetime

from drip_engine import supabase_client as db
from drip_engine.clock import parse_ts, to_iso, utcnow
from drip_engine.config import CAS_MAX_RETRIES
from drip_engine.errors import CONDITION_NOT_MET, AccessDenied, Conflict, NotFound, ValidationFailure
from drip_engine.services import attribution, engagement, gating
from drip_engine.services.identity import normalize_email, resolve_lead_id
from drip_engine.services.notifications import notify
from drip_engine.services.sequence_model import get_item, get_sequence
from drip_engine.services.unlock_scheduler import compute_unlock, next_unlock

logger = logging.getLogger(__name__)

PARTICIPANT_STATUSES = ("active", "completed", "converted", "dropped", "paused")

MEASUREMENT_KEYS = ("score", "watch_percent", "time_spent_minutes")

# Event types that count as participant activity for streaks
ACTIVITY_EVENTS = {"view", "video_progress", "webinar_attend", "email_click"}


# ---------------------------------------------------------------------------
# Write path
# ---------------------------------------------------------------------------

def _load(participant_id: str) -> dict:
    with db.store_errors("load participant"):
        participant = db.get_participant(participant_id)
    if not participant:
        raise NotFound(f"Participant {participant_id} not found")
    return participant


def _mutate(participant_id: str, fn) -> tuple[dict, dict, dict | None]:
    """Apply ``fn(participant, sequence)`` under an optimistic version check.

    ``fn`` edits the participant copy in place and returns a dict of effects,
    or None when nothing changed (no write happens). Exceptions raised by
    ``fn`` abort without writing. Returns (participant, sequence, effects).
    Raises Conflict when every retry loses the race.
    """
    for attempt in range(1, CAS_MAX_RETRIES + 1):
        stored = _load(participant_id)
        sequence = get_sequence(stored["sequence_id"])
        participant = copy.deepcopy(stored)

        effects = fn(participant, sequence)
        if effects is None:
            return stored, sequence, None

        participant["version"] = stored["version"] + 1
        participant["updated_at"] = to_iso(utcnow())
        data = {k: v for k, v in participant.items() if k != "id"}
        with db.store_errors("update participant"):
            saved = db.update_participant_if_version(participant_id, data, stored["version"])
        if saved:
            return saved, sequence, effects

        logger.debug("Participant %s changed during write (attempt %d), retrying",
                     participant_id, attempt)

    raise Conflict(f"Participant {participant_id} is being updated concurrently; retry later")


def _lowest_incomplete_order(participant: dict, sequence: dict) -> int:
    for item in sequence["items"]:
        if participant["item_progress"].get(item["id"], {}).get("status") != "completed":
            return item["order"]
    return len(sequence["items"])


def _unlock_due(participant: dict, sequence: dict, now: datetime) -> list[str]:
    """Flip every locked item the participant may now access. Returns their ids."""
    unlocked = []
    for item in sequence["items"]:
        if participant["item_progress"].get(item["id"], {}).get("status", "locked") != "locked":
            continue
        decision = gating.evaluate_access(participant, sequence, item["id"], now)
        if decision["allowed"] and gating.apply_access(participant, decision, now):
            unlocked.append(item["id"])
    return unlocked


def _exit(participant: dict, reason: str, now: datetime) -> bool:
    if participant["status"] not in ("active", "paused"):
        return False
    participant["status"] = "dropped"
    participant["exit_reason"] = reason
    participant["exited_at"] = to_iso(now)
    return True


def _tag_exit(participant: dict, sequence: dict, now: datetime) -> bool:
    exit_tags = set(sequence["exit_conditions"].get("on_tags") or [])
    hit = sorted(exit_tags & set(participant.get("tags") or []))
    return bool(hit) and _exit(participant, f"tag:{hit[0]}", now)


def _context(participant: dict, sequence: dict, item: dict | None = None) -> dict:
    return {
        "participant_name": participant.get("name") or "",
        "email": participant["email"],
        "sequence_name": sequence["name"],
        "sequence_kind": sequence["kind"],
        "item_title": (item or {}).get("title", ""),
        "item_order": (item or {}).get("order"),
        "points": participant.get("points", 0),
        "badges": participant.get("badges", []),
    }


def _notify_unlocked(participant: dict, sequence: dict, item_ids: list[str]) -> None:
    template = sequence["notifications"].get("on_unlock")
    for item_id in item_ids:
        notify(template, participant["email"], _context(participant, sequence, get_item(sequence, item_id)))


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def _check_registration(sequence: dict, now: datetime) -> None:
    if sequence["status"] != "published":
        raise Conflict(f"Sequence {sequence['slug']} is not accepting registrations ({sequence['status']})")

    reg = sequence.get("registration") or {}
    if not reg.get("is_open", True):
        raise Conflict("Registration is closed")
    opens_at = parse_ts(reg.get("opens_at"))
    if opens_at and now < opens_at:
        raise Conflict(f"Registration opens at {opens_at.isoformat()}")
    closes_at = parse_ts(reg.get("closes_at"))
    if closes_at and now > closes_at:
        raise Conflict("Registration has closed")

    if reg.get("max_participants"):
        with db.store_errors("count participants"):
            registered = db.count("dp_participants", {"sequence_id": sequence["id"]})
        if registered >= reg["max_participants"]:
            raise Conflict("Sequence is full")


def register(sequence_id: str, email: str, source: dict | None = None, name: str = "",
             user_id: str | None = None, tags: list[str] | None = None,
             now: datetime | None = None) -> dict:
    """Register an identity into a sequence.

    Idempotent: re-registering an existing (sequence, email) returns the
    existing record unchanged.
    """
    participant, _ = enroll(sequence_id, email, source=source, name=name,
                            user_id=user_id, tags=tags, now=now)
    return participant


def enroll(sequence_id: str, email: str, source: dict | None = None, name: str = "",
           user_id: str | None = None, tags: list[str] | None = None,
           now: datetime | None = None) -> tuple[dict, bool]:
    """Register an identity, returning (participant, created)."""
    now = now or utcnow()
    email = normalize_email(email)
    if "@" not in email:
        raise ValidationFailure(f"Invalid email: {email!r}")

    sequence = get_sequence(sequence_id)
    with db.store_errors("load participant"):
        existing = db.get_participant_by_email(sequence_id, email)
    if existing:
        return existing, False

    _check_registration(sequence, now)

    source = attribution.normalize_source(source)
    participant = {
        "id": str(uuid.uuid4()),
        "sequence_id": sequence_id,
        "email": email,
        "user_id": user_id,
        "lead_id": resolve_lead_id(email),
        "name": name,
        "tags": list(tags or []),
        "status": "active",
        "registered_at": to_iso(now),
        "last_active_at": to_iso(now),
        "completed_at": None,
        "converted_at": None,
        "current_item_order": 0,
        "item_progress": {item["id"]: {"status": "locked"} for item in sequence["items"]},
        "engagement": engagement.new_engagement(now),
        "points": 0,
        "badges": [],
        "point_awards": [],
        "attribution": {"first_touch": None, "last_touch": None},
        "version": 1,
        "created_at": to_iso(now),
        "updated_at": to_iso(now),
    }
    attribution.apply_touch(participant, source, now)
    _unlock_due(participant, sequence, now)

    try:
        with db.store_errors("register participant"):
            saved = db.insert_unique("dp_participants", participant)
    except Conflict:
        # Lost a race with a concurrent registration for the same identity
        with db.store_errors("load participant"):
            existing = db.get_participant_by_email(sequence_id, email)
        if existing:
            return existing, False
        raise

    attribution.log_event(sequence_id, "registration", saved, source=source,
                          metadata={"name": name} if name else None, now=now)
    db.log_action("participant_registered", "participant", saved["id"],
                  f"{email} joined {sequence['name']} via {source['utm_source']}")
    notify(sequence["notifications"].get("on_register"), email, _context(saved, sequence))
    logger.info("Registered %s in sequence %s", email, sequence_id)
    return saved, True


# ---------------------------------------------------------------------------
# Access, start, completion
# ---------------------------------------------------------------------------

def check_access(participant_id: str, item_id: str, now: datetime | None = None) -> dict:
    """Gate an item and apply the unlock side effect. Returns the access result."""
    now = now or utcnow()
    decision: dict = {}

    def fn(participant, sequence):
        decision.update(gating.evaluate_access(participant, sequence, item_id, now))
        if not decision["allowed"]:
            return None
        gating.apply_access(participant, decision, now)
        engagement.touch_activity(participant, now, login=True)
        engagement.evaluate_badges(participant, sequence)
        return {"unlocked": [item_id] if decision["unlock"] else []}

    participant, sequence, effects = _mutate(participant_id, fn)
    if effects:
        _notify_unlocked(participant, sequence, effects["unlocked"])
    return gating.public_result(decision)


def record_start(participant_id: str, item_id: str, now: datetime | None = None) -> dict:
    """Mark an item in progress. Requires access; started_at is stamped once."""
    now = now or utcnow()

    def fn(participant, sequence):
        decision = gating.evaluate_access(participant, sequence, item_id, now)
        gating.raise_if_denied(decision)
        gating.apply_access(participant, decision, now)

        progress = participant["item_progress"][item_id]
        started = progress["status"] == "unlocked"
        if started:
            progress["status"] = "in_progress"
            progress["started_at"] = progress.get("started_at") or to_iso(now)

        engagement.touch_activity(participant, now, login=True)
        engagement.award_points(participant, sequence, item_id, "start")
        engagement.evaluate_badges(participant, sequence)
        return {"started": started, "unlocked": [item_id] if decision["unlock"] else []}

    participant, sequence, effects = _mutate(participant_id, fn)
    if effects and effects["started"]:
        attribution.log_event(sequence["id"], "start", participant,
                              item_order=get_item(sequence, item_id)["order"], now=now)
    if effects:
        _notify_unlocked(participant, sequence, effects["unlocked"])
    return participant


def validate_measurements(measurements: dict | None) -> dict:
    measurements = dict(measurements or {})
    unknown = set(measurements) - set(MEASUREMENT_KEYS)
    if unknown:
        raise ValidationFailure(f"Unknown measurements: {sorted(unknown)}")
    for key, value in measurements.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationFailure(f"Measurement {key} must be a number")
    if not 0 <= measurements.get("watch_percent", 0) <= 100:
        raise ValidationFailure("watch_percent must be between 0 and 100")
    return measurements


def _check_measurements(item: dict, measurements: dict) -> None:
    conditions = item.get("conditions") or {}
    min_score = conditions.get("min_score")
    if min_score is not None and measurements.get("score", float("-inf")) < min_score:
        raise AccessDenied(CONDITION_NOT_MET,
                           f"Score {measurements.get('score')} is below the required {min_score}",
                           item_id=item["id"])
    min_watch = conditions.get("min_watch_percent")
    if min_watch is not None and measurements.get("watch_percent", 0) < min_watch:
        raise AccessDenied(CONDITION_NOT_MET,
                           f"Watched {measurements.get('watch_percent', 0)}%, {min_watch}% required",
                           item_id=item["id"])


def record_completion(participant_id: str, item_id: str, measurements: dict | None = None,
                      now: datetime | None = None) -> dict:
    """Complete an item.

    Measurements that miss the item's min_score / min_watch_percent raise
    AccessDenied(condition-not-met) and leave the item as it was. Completing
    an already-completed item returns the record unchanged.
    """
    now = now or utcnow()
    measurements = validate_measurements(measurements)

    def fn(participant, sequence):
        item = get_item(sequence, item_id)
        if participant["item_progress"].get(item_id, {}).get("status") == "completed":
            return None

        decision = gating.evaluate_access(participant, sequence, item_id, now)
        gating.raise_if_denied(decision)
        _check_measurements(item, measurements)
        gating.apply_access(participant, decision, now)

        progress = participant["item_progress"][item_id]
        progress["status"] = "completed"
        progress["started_at"] = progress.get("started_at") or to_iso(now)
        progress["completed_at"] = to_iso(now)
        progress["measurements"] = measurements
        participant["current_item_order"] = _lowest_incomplete_order(participant, sequence)

        engagement.touch_activity(participant, now, minutes=measurements.get("time_spent_minutes", 0))
        points = engagement.award_points(participant, sequence, item_id, "complete")

        effects = {"item": item, "points": points, "sequence_completed": False, "exited": False}
        if participant["current_item_order"] >= len(sequence["items"]):
            participant["completed_at"] = participant.get("completed_at") or to_iso(now)
            if participant["status"] in ("active", "paused"):
                participant["status"] = "completed"
            effects["points"] += engagement.award_completion_bonus(participant, sequence)
            effects["sequence_completed"] = True
        else:
            effects["exited"] = _tag_exit(participant, sequence, now)

        effects["unlocked"] = [] if effects["exited"] else _unlock_due(participant, sequence, now)
        effects["badges"] = engagement.evaluate_badges(participant, sequence)
        return effects

    participant, sequence, effects = _mutate(participant_id, fn)
    if effects is None:
        return participant

    item = effects["item"]
    attribution.log_event(sequence["id"], "complete", participant, item_order=item["order"],
                          metadata=measurements, now=now)
    db.log_action("item_completed", "participant", participant_id,
                  f"{participant['email']} completed {item['id']} (+{effects['points']} pts)")

    if effects["sequence_completed"]:
        attribution.log_event(sequence["id"], "sequence_complete", participant,
                              metadata={"points": participant.get("points", 0)}, now=now)
        db.log_action("sequence_completed", "participant", participant_id,
                      f"{participant['email']} finished {sequence['name']}")
        notify(sequence["notifications"].get("on_complete"), participant["email"],
               _context(participant, sequence))
        logger.info("Participant %s completed sequence %s", participant_id, sequence["id"])

    _notify_unlocked(participant, sequence, effects["unlocked"])
    return participant


# ---------------------------------------------------------------------------
# Events and exit conditions
# ---------------------------------------------------------------------------

def apply_event(participant_id: str, event: dict, now: datetime | None = None) -> dict:
    """Apply a recorded event: touch attribution, activity and exit conditions.

    A purchase converts the participant regardless of remaining items.
    """
    now = now or utcnow()
    event_type = event["type"]
    timestamp = parse_ts(event.get("timestamp")) or now

    def fn(participant, sequence):
        exits = sequence["exit_conditions"]
        changed = attribution.apply_touch(participant, event.get("source"), timestamp)
        effects = {"converted": False, "exited": False}

        if event_type == "purchase":
            if not participant.get("converted_at"):
                participant["converted_at"] = to_iso(timestamp)
                changed = True
            if participant["status"] in ("active", "paused"):
                participant["status"] = "converted"
                effects["converted"] = changed = True

        elif event_type == "unsubscribe":
            if exits.get("on_unsubscribe") and _exit(participant, "unsubscribe", timestamp):
                effects["exited"] = changed = True

        elif event_type == "tag_added":
            tag = (event.get("metadata") or {}).get("tag")
            tags = participant.setdefault("tags", [])
            if tag and tag not in tags:
                tags.append(tag)
                changed = True
            if _tag_exit(participant, sequence, timestamp):
                effects["exited"] = changed = True

        elif event_type in ACTIVITY_EVENTS:
            engagement.touch_activity(participant, timestamp)
            engagement.evaluate_badges(participant, sequence)
            changed = True

        return effects if changed else None

    participant, sequence, effects = _mutate(participant_id, fn)
    if effects and effects["converted"]:
        db.log_action("participant_converted", "participant", participant_id,
                      f"{participant['email']} purchased during {sequence['name']}")
        logger.info("Participant %s converted", participant_id)
    if effects and effects["exited"]:
        db.log_action("participant_exited", "participant", participant_id,
                      f"{participant['email']}: {participant.get('exit_reason')}")
        logger.info("Participant %s exited (%s)", participant_id, participant.get("exit_reason"))
    return participant


def _transition(participant_id: str, target: str, allowed_from: set[str], action: str) -> dict:
    def fn(participant, sequence):
        if participant["status"] == target:
            return None
        if participant["status"] not in allowed_from:
            raise Conflict(f"Cannot move participant from {participant['status']} to {target}")
        participant["status"] = target
        if target == "dropped":
            participant["exit_reason"] = "manual"
            participant["exited_at"] = to_iso(utcnow())
        return {}

    participant, _, effects = _mutate(participant_id, fn)
    if effects is not None:
        db.log_action(action, "participant", participant_id, participant["email"])
    return participant


def pause(participant_id: str) -> dict:
    return _transition(participant_id, "paused", {"active"}, "participant_paused")


def resume(participant_id: str) -> dict:
    return _transition(participant_id, "active", {"paused"}, "participant_resumed")


def drop(participant_id: str) -> dict:
    """Soft-remove a participant. Rows are never deleted."""
    return _transition(participant_id, "dropped", {"active", "paused"}, "participant_dropped")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_participant(participant_id: str) -> dict:
    return _load(participant_id)


def get_progress(participant_id: str, now: datetime | None = None) -> dict:
    """Read-only progress snapshot: per-item status and unlock times, next unlock, percent."""
    now = now or utcnow()
    participant = _load(participant_id)
    sequence = get_sequence(participant["sequence_id"])

    items = []
    completed = 0
    for item in sequence["items"]:
        progress = participant["item_progress"].get(item["id"]) or {"status": "locked"}
        if progress["status"] == "completed":
            completed += 1
        decision = gating.evaluate_access(participant, sequence, item["id"], now)
        unlock_at = compute_unlock(participant, sequence, item)
        items.append({
            "id": item["id"],
            "title": item["title"],
            "order": item["order"],
            "status": progress["status"],
            "unlock_at": to_iso(unlock_at),
            "available": decision["allowed"],
            "reason": decision["reason"],
            "completed_at": progress.get("completed_at"),
        })

    upcoming = next_unlock(participant, sequence, now)
    if upcoming:
        upcoming = {**upcoming, "unlock_at": to_iso(upcoming["unlock_at"])}

    total = len(sequence["items"])
    return {
        "participant_id": participant["id"],
        "sequence_id": sequence["id"],
        "email": participant["email"],
        "status": participant["status"],
        "current_item_order": participant["current_item_order"],
        "completed_count": completed,
        "total_items": total,
        "percent_complete": round(completed / total * 100, 1) if total else 0.0,
        "points": participant.get("points", 0),
        "badges": participant.get("badges", []),
        "streak_days": (participant.get("engagement") or {}).get("streak_days", 0),
        "next_unlock": upcoming,
        "items": items,
    }


def _last_completion(participant: dict) -> str:
    times = [
        p["completed_at"] for p in (participant.get("item_progress") or {}).values()
        if p.get("status") == "completed" and p.get("completed_at")
    ]
    return to_iso(max(parse_ts(t) for t in times)) if times else ""


def get_leaderboard(sequence_id: str, limit: int = 10) -> list[dict]:
    """Rank participants by points, then completed items.

    Remaining ties go to whoever reached their last completion first, then by email.
    Dropped participants are not ranked.
    """
    if limit < 1:
        raise ValidationFailure("limit must be at least 1")
    get_sequence(sequence_id)

    with db.store_errors("load leaderboard"):
        rows = db.select_all("dp_participants", match={"sequence_id": sequence_id})

    entries = []
    for p in rows:
        if p["status"] == "dropped":
            continue
        completed = sum(1 for ip in (p.get("item_progress") or {}).values() if ip.get("status") == "completed")
        entries.append({
            "participant_id": p["id"],
            "email": p["email"],
            "name": p.get("name") or "",
            "points": p.get("points", 0),
            "completed_count": completed,
            "last_completed_at": _last_completion(p) or None,
        })

    # Missing completion times sort last
    entries.sort(key=lambda e: (-e["points"], -e["completed_count"],
                                e["last_completed_at"] or "~", e["email"]))
    for rank, entry in enumerate(entries[:limit], start=1):
        entry["rank"] = rank
    return entries[:limit]
