"""Gating — may this participant view or work on this item right now?

``evaluate_access`` is a pure decision. The only side effects of a successful
check (reactivating a paused participant, flipping a locked item to unlocked)
are applied by ``apply_access`` inside the progression write path.
"""

from datetime import datetime

from drip_engine.clock import to_iso
from drip_engine.errors import (
    CONDITION_NOT_MET,
    NOT_YET_UNLOCKED,
    PREREQUISITE_INCOMPLETE,
    SEQUENCE_EXITED,
    AccessDenied,
)
from drip_engine.services.sequence_model import get_item, get_item_by_order
from drip_engine.services.unlock_scheduler import compute_unlock


def _deny(item_id: str, reason: str, message: str, unlock_at: datetime | None = None) -> dict:
    return {
        "allowed": False,
        "item_id": item_id,
        "reason": reason,
        "message": message,
        "unlock_at": unlock_at,
        "reactivate": False,
        "unlock": False,
    }


def _status_check(participant: dict, sequence: dict) -> str | None:
    status = participant["status"]
    if status == "dropped":
        return "Participant has left this sequence"
    if status == "converted" and sequence["exit_conditions"].get("on_purchase"):
        return "Participant converted and this sequence ends on purchase"
    return None


def _conditions_check(participant: dict, sequence: dict, item: dict) -> str | None:
    conditions = item.get("conditions") or {}
    tags = set(participant.get("tags") or [])

    missing = [t for t in conditions.get("required_tags", []) if t not in tags]
    if missing:
        return f"Missing required tags: {', '.join(missing)}"

    excluded = [t for t in conditions.get("excluded_tags", []) if t in tags]
    if excluded:
        return f"Has excluded tags: {', '.join(excluded)}"

    min_prior = conditions.get("min_prior_score")
    if min_prior is not None:
        previous = get_item_by_order(sequence, item["order"] - 1)
        score = None
        if previous is not None:
            progress = participant["item_progress"].get(previous["id"]) or {}
            score = (progress.get("measurements") or {}).get("score")
        if score is None or score < min_prior:
            return f"Requires a score of at least {min_prior} on the previous item"
    return None


def evaluate_access(participant: dict, sequence: dict, item_id: str, now: datetime) -> dict:
    """Decide ALLOW/DENY for (participant, item) at `now`.

    Checks run in order and stop at the first failure: participant status,
    prerequisites, unlock time, item conditions.
    """
    item = get_item(sequence, item_id)
    progress = participant["item_progress"].get(item_id) or {"status": "locked"}

    exited = _status_check(participant, sequence)
    if exited:
        return _deny(item_id, SEQUENCE_EXITED, exited)

    reactivate = participant["status"] == "paused"

    if progress["status"] != "completed":
        incomplete = [
            prior_id for prior_id in item["required_prior_items"]
            if (participant["item_progress"].get(prior_id) or {}).get("status") != "completed"
        ]
        if incomplete:
            return _deny(item_id, PREREQUISITE_INCOMPLETE,
                         f"Complete {', '.join(incomplete)} first")

        unlock_at = compute_unlock(participant, sequence, item)
        if unlock_at is None:
            return _deny(item_id, NOT_YET_UNLOCKED, "Unlock time not determined yet")
        if now < unlock_at:
            return _deny(item_id, NOT_YET_UNLOCKED,
                         f"Unlocks at {unlock_at.isoformat()}", unlock_at=unlock_at)

        unmet = _conditions_check(participant, sequence, item)
        if unmet:
            return _deny(item_id, CONDITION_NOT_MET, unmet)

    return {
        "allowed": True,
        "item_id": item_id,
        "reason": None,
        "message": "",
        "unlock_at": None,
        "reactivate": reactivate,
        "unlock": progress["status"] == "locked",
    }


def apply_access(participant: dict, decision: dict, now: datetime) -> bool:
    """Apply the side effects of an allowed decision. Returns True if anything changed."""
    if not decision["allowed"]:
        return False

    changed = False
    if decision["reactivate"] and participant["status"] == "paused":
        participant["status"] = "active"
        changed = True

    progress = participant["item_progress"].setdefault(decision["item_id"], {"status": "locked"})
    if decision["unlock"] and progress["status"] == "locked":
        progress["status"] = "unlocked"
        progress["unlocked_at"] = to_iso(now)
        changed = True
    return changed


def raise_if_denied(decision: dict) -> None:
    if not decision["allowed"]:
        raise AccessDenied(decision["reason"], decision["message"],
                           unlock_at=decision["unlock_at"], item_id=decision["item_id"])


def public_result(decision: dict) -> dict:
    """AccessResult as returned to callers: {allowed, reason, unlock_at, item_id}."""
    unlock_at = decision.get("unlock_at")
    return {
        "allowed": decision["allowed"],
        "item_id": decision["item_id"],
        "reason": decision["reason"],
        "message": decision["message"],
        "unlock_at": to_iso(unlock_at) if unlock_at else None,
    }
