"""Unlock scheduler — when does each item become eligible for a participant?

Everything here is a pure function of durable state (the participant record and
the sequence definition). There are no timers: eligibility is evaluated lazily
whenever a participant asks for an item. ``None`` means the unlock time cannot
be determined yet (a prerequisite hasn't happened).
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from drip_engine.clock import parse_ts
from drip_engine.services.sequence_model import get_item_by_order, parse_time_of_day


def _progress(participant: dict, item_id: str) -> dict:
    return (participant.get("item_progress") or {}).get(item_id) or {}


def _completed_at(participant: dict, item_id: str) -> datetime | None:
    progress = _progress(participant, item_id)
    if progress.get("status") != "completed":
        return None
    return parse_ts(progress.get("completed_at"))


def round_to_time_of_day(instant: datetime, time_of_day: str, tz_name: str) -> datetime:
    """Round an instant forward to the next HH:MM wall-clock time in tz_name."""
    hour, minute = parse_time_of_day(time_of_day)
    tz = ZoneInfo(tz_name)
    local = instant.astimezone(tz)
    candidate = datetime(local.year, local.month, local.day, hour, minute, tzinfo=tz)
    if candidate < local:
        next_day = local.date() + timedelta(days=1)
        candidate = datetime(next_day.year, next_day.month, next_day.day, hour, minute, tzinfo=tz)
    return candidate.astimezone(instant.tzinfo)


def previous_completion(participant: dict, sequence: dict, item: dict) -> datetime | None:
    """Completion time of the item this one drips from.

    That is the latest-completed declared prerequisite, or the item immediately
    before it when none are declared. None if it isn't completed yet.
    """
    prior_ids = item.get("required_prior_items") or []
    if prior_ids:
        times = [_completed_at(participant, prior_id) for prior_id in prior_ids]
        if any(t is None for t in times):
            return None
        return max(times)

    previous = get_item_by_order(sequence, item["order"] - 1)
    if previous is None:
        return parse_ts(participant["registered_at"])
    return _completed_at(participant, previous["id"])


def _basis(sequence: dict, item: dict) -> str:
    """Which clock the item's delay runs from under the sequence's delivery mode."""
    mode = sequence["delivery_mode"]
    if mode == "all_at_once":
        return "immediate"
    if mode == "drip_from_registration":
        return "registration"
    if mode == "drip_from_completion":
        return "registration" if item["order"] == 0 else "previous"

    rule_type = item["unlock_rule"]["type"]
    if rule_type == "immediate":
        return "immediate"
    if rule_type == "delay_from_previous":
        return "registration" if item["order"] == 0 else "previous"
    return "registration"


def compute_unlock(participant: dict, sequence: dict, item: dict) -> datetime | None:
    """Unlock timestamp for (participant, item), or None when undetermined."""
    for prior_id in item.get("required_prior_items") or []:
        if _progress(participant, prior_id).get("status", "locked") == "locked":
            return None

    registered_at = parse_ts(participant["registered_at"])
    rule = item["unlock_rule"]
    basis = _basis(sequence, item)

    if basis == "immediate":
        return registered_at

    if basis == "previous":
        start = previous_completion(participant, sequence, item)
        if start is None:
            return None
    else:
        start = registered_at

    unlock = start + timedelta(hours=rule.get("delay_hours") or 0)
    if rule["type"] == "calendar_time_of_day" and rule.get("time_of_day"):
        unlock = round_to_time_of_day(unlock, rule["time_of_day"], sequence["timezone"])
    return unlock


def unlock_schedule(participant: dict, sequence: dict) -> dict[str, datetime | None]:
    """Unlock time for every item, keyed by item id."""
    return {item["id"]: compute_unlock(participant, sequence, item) for item in sequence["items"]}


def next_unlock(participant: dict, sequence: dict, now: datetime) -> dict | None:
    """Earliest determined unlock still in the future, for "unlocks in X hours" display."""
    upcoming = None
    for item in sequence["items"]:
        if _progress(participant, item["id"]).get("status", "locked") != "locked":
            continue
        unlock = compute_unlock(participant, sequence, item)
        if unlock is None or unlock <= now:
            continue
        if upcoming is None or unlock < upcoming["unlock_at"]:
            upcoming = {"item_id": item["id"], "order": item["order"], "unlock_at": unlock}
    return upcoming
