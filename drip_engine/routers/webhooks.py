"""Webhooks — behavioral event ingestion and opt-in form registrations."""

import logging
import re
import time
from collections import defaultdict

from fastapi import APIRouter, Header, HTTPException, Request

from drip_engine import supabase_client as db
from drip_engine.config import WEBHOOK_SECRET
from drip_engine.routers.sequences import _json_body
from drip_engine.services import progression
from drip_engine.services.attribution import SOURCE_FIELDS, record_event
from drip_engine.services.sequence_model import get_sequence_by_slug

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks")

# Basic email validation, intentionally permissive
_EMAIL_RE = re.compile(r"^[^@\s]{1,64}@[^@\s]{1,255}$")
_MAX_NAME_LEN = 200
_MAX_SOURCE_LEN = 100

# In-memory rate limiter: {ip: [timestamp, ...]}
_rate_buckets: dict[str, list[float]] = defaultdict(list)
_RATE_LIMIT = 120      # max requests per window
_RATE_WINDOW = 60      # window in seconds


def _check_rate_limit(request: Request) -> None:
    """Raise 429 if IP exceeds rate limit. Simple sliding window."""
    ip = request.client.host if request.client else "unknown"
    now = time.monotonic()
    cutoff = now - _RATE_WINDOW
    _rate_buckets[ip] = bucket = [t for t in _rate_buckets[ip] if t > cutoff]
    if len(bucket) >= _RATE_LIMIT:
        raise HTTPException(status_code=429, detail="Rate limit exceeded")
    bucket.append(now)


def _check_secret(authorization: str) -> None:
    if WEBHOOK_SECRET and authorization != f"Bearer {WEBHOOK_SECRET}":
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


def _validate_email(email: str) -> str:
    """Validate and normalize email. Raises HTTPException on invalid."""
    email = (email or "").strip().lower()
    if not email or not _EMAIL_RE.match(email):
        raise HTTPException(status_code=400, detail="Invalid email format")
    return email


def _source_from(body: dict) -> dict:
    """utm_* fields may arrive flat on the payload or nested under "source"."""
    source = body.get("source") if isinstance(body.get("source"), dict) else {}
    return {
        field: str(source.get(field) or body.get(field) or "")[:_MAX_SOURCE_LEN]
        for field in SOURCE_FIELDS
    }


@router.post("/events")
async def event_webhook(request: Request, authorization: str = Header("")):
    """Record one behavioral event.

    Payload: { id?, type, sequence_id?, participant_id?, session_id?, item_order?,
               metadata?, source?, value?, timestamp? }

    Send a stable id to make retries safe: a repeated id is applied to the
    participant again but logged only once.
    """
    _check_rate_limit(request)
    _check_secret(authorization)

    body = await _json_body(request)
    event = {**body, "source": _source_from(body)}
    saved = record_event(event)
    return {"status": "recorded", "id": saved["id"], "is_conversion": saved["is_conversion"]}


@router.post("/optin")
async def optin_webhook(request: Request, authorization: str = Header("")):
    """Register a form opt-in into a sequence by slug.

    Payload: { email, sequence, name?, tags?, utm_source?, utm_campaign?, ... }
    """
    _check_rate_limit(request)
    _check_secret(authorization)

    body = await _json_body(request)
    email = _validate_email(body.get("email", ""))
    name = (body.get("name") or "").strip()[:_MAX_NAME_LEN]
    slug = body.get("sequence") or ""
    if not slug:
        raise HTTPException(status_code=400, detail="sequence required")

    sequence = get_sequence_by_slug(slug)
    source = _source_from(body)
    participant, created = progression.enroll(sequence["id"], email, source=source, name=name,
                                              tags=body.get("tags"))
    # A repeat opt-in is not a new conversion
    if created:
        record_event({
            "type": "optin",
            "sequence_id": sequence["id"],
            "participant_id": participant["id"],
            "source": source,
        })

    db.log_action("optin_received", "webhook", email,
                  f"{sequence['slug']} via {source['utm_source'] or 'unknown'}")
    return {"status": "ok", "participant_id": participant["id"]}
