"""Engagement tracker — streaks, points and badges.

These functions mutate a participant dict in place and are only called from
inside the progression write path, so every award lands in the same
version-checked write as the activity that earned it.
"""

from datetime import datetime

from drip_engine.clock import parse_ts, to_iso
from drip_engine.config import STREAK_MIN_GAP_HOURS, STREAK_WINDOW_HOURS


def new_engagement(now: datetime) -> dict:
    return {
        "streak_days": 1,
        "longest_streak": 1,
        "total_time_spent_minutes": 0,
        "login_count": 1,
        "last_active_at": to_iso(now),
        "streak_updated_at": to_iso(now),
    }


def touch_activity(participant: dict, now: datetime, minutes: float = 0, login: bool = False) -> None:
    """Record activity at `now` and roll the streak forward.

    Within the streak window a new day counts once at least STREAK_MIN_GAP_HOURS
    have passed since the streak last moved; outside it the streak restarts at 1.
    """
    engagement = participant.setdefault("engagement", new_engagement(now))
    last_active = parse_ts(engagement.get("last_active_at"))

    if last_active is None:
        engagement["streak_days"] = 1
        engagement["streak_updated_at"] = to_iso(now)
    else:
        hours_since_active = (now - last_active).total_seconds() / 3600
        if hours_since_active > STREAK_WINDOW_HOURS:
            engagement["streak_days"] = 1
            engagement["streak_updated_at"] = to_iso(now)
        else:
            streak_moved = parse_ts(engagement.get("streak_updated_at")) or last_active
            if (now - streak_moved).total_seconds() / 3600 >= STREAK_MIN_GAP_HOURS:
                engagement["streak_days"] = engagement.get("streak_days", 0) + 1
                engagement["streak_updated_at"] = to_iso(now)

    engagement["longest_streak"] = max(engagement.get("longest_streak", 0), engagement["streak_days"])
    engagement["total_time_spent_minutes"] = engagement.get("total_time_spent_minutes", 0) + (minutes or 0)
    if login:
        engagement["login_count"] = engagement.get("login_count", 0) + 1
    if last_active is None or now > last_active:
        engagement["last_active_at"] = to_iso(now)
        participant["last_active_at"] = to_iso(now)


def award_points(participant: dict, sequence: dict, item_id: str, event_type: str) -> int:
    """Award the configured points for (item, event_type) once. Returns points added."""
    gamification = sequence.get("gamification") or {}
    if not gamification.get("enabled"):
        return 0

    key = f"{item_id}:{event_type}"
    awards = participant.setdefault("point_awards", [])
    if key in awards:
        return 0

    amount = (gamification.get("points") or {}).get(event_type, 0)
    awards.append(key)
    participant["points"] = participant.get("points", 0) + amount
    return amount


def award_completion_bonus(participant: dict, sequence: dict) -> int:
    """One-off bonus for finishing the whole sequence."""
    gamification = sequence.get("gamification") or {}
    if not gamification.get("enabled"):
        return 0
    awards = participant.setdefault("point_awards", [])
    if "sequence:complete" in awards:
        return 0
    awards.append("sequence:complete")
    bonus = gamification.get("completion_bonus", 0)
    participant["points"] = participant.get("points", 0) + bonus
    return bonus


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------

def _completed_orders(participant: dict, sequence: dict) -> list[int]:
    progress = participant.get("item_progress") or {}
    return sorted(
        item["order"] for item in sequence["items"]
        if (progress.get(item["id"]) or {}).get("status") == "completed"
    )


def _streak(participant: dict) -> int:
    return (participant.get("engagement") or {}).get("streak_days", 0)


BADGE_CRITERIA = {
    "first_item": lambda p, s: len(_completed_orders(p, s)) >= 1,
    "halfway": lambda p, s: bool(s["items"]) and len(_completed_orders(p, s)) * 2 >= len(s["items"]),
    "complete_all": lambda p, s: bool(s["items"]) and len(_completed_orders(p, s)) == len(s["items"]),
    "streak_3": lambda p, s: _streak(p) >= 3,
    "streak_7": lambda p, s: _streak(p) >= 7,
}


def badge_earned(code: str, participant: dict, sequence: dict) -> bool:
    """Evaluate a badge criteria code against participant state.

    Besides the named criteria, ``complete_item_<n>`` is earned once the item
    at order n is completed.
    """
    if code in BADGE_CRITERIA:
        return BADGE_CRITERIA[code](participant, sequence)
    if code.startswith("complete_item_"):
        try:
            order = int(code.removeprefix("complete_item_"))
        except ValueError:
            return False
        return order in _completed_orders(participant, sequence)
    return False


def evaluate_badges(participant: dict, sequence: dict) -> list[str]:
    """Award every configured badge whose criteria now hold. Returns newly earned codes."""
    gamification = sequence.get("gamification") or {}
    if not gamification.get("enabled"):
        return []

    badges = participant.setdefault("badges", [])
    earned = []
    for code in gamification.get("badges") or []:
        if code not in badges and badge_earned(code, participant, sequence):
            badges.append(code)
            earned.append(code)
    return earned
