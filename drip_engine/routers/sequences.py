"""Sequences API — definitions, items, leaderboard and analytics."""

from typing import Optional

from fastapi import APIRouter, Query, Request

from drip_engine import supabase_client as db
from drip_engine.clock import parse_ts
from drip_engine.errors import ValidationFailure
from drip_engine.services import attribution, progression, sequence_model

router = APIRouter(tags=["Sequences"])


def _query_ts(value: str | None, field: str):
    if not value:
        return None
    try:
        return parse_ts(value)
    except ValueError:
        raise ValidationFailure(f"{field} must be an ISO-8601 timestamp")


async def _json_body(request: Request) -> dict:
    if not await request.body():
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationFailure("Request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationFailure("Request body must be a JSON object")
    return body


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

@router.get("/api/v1/sequences", summary="List sequences")
async def list_sequences(status: Optional[str] = Query(None, description="draft, published, paused or archived")):
    results = sequence_model.list_sequences(status)
    return {"count": len(results), "results": results}


@router.post("/api/v1/sequences", status_code=201, summary="Create a sequence")
async def create_sequence(request: Request):
    body = await _json_body(request)
    created_by = body.pop("created_by", "api")
    return sequence_model.create_sequence(body, created_by=created_by)


@router.get("/api/v1/sequences/by-slug/{slug}", summary="Get a sequence by slug")
async def get_sequence_by_slug(slug: str):
    return sequence_model.get_sequence_by_slug(slug)


@router.get("/api/v1/sequences/{sequence_id}", summary="Get a sequence")
async def get_sequence(sequence_id: str):
    return sequence_model.get_sequence(sequence_id)


@router.patch("/api/v1/sequences/{sequence_id}", summary="Update sequence settings")
async def update_sequence(sequence_id: str, request: Request):
    return sequence_model.update_sequence(sequence_id, await _json_body(request))


@router.post("/api/v1/sequences/{sequence_id}/status", summary="Publish, pause or archive")
async def set_status(sequence_id: str, request: Request):
    body = await _json_body(request)
    return sequence_model.set_status(sequence_id, body.get("status", ""))


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

@router.post("/api/v1/sequences/{sequence_id}/items", status_code=201, summary="Append an item")
async def add_item(sequence_id: str, request: Request):
    return sequence_model.add_item(sequence_id, await _json_body(request))


@router.put("/api/v1/sequences/{sequence_id}/items/order", summary="Reorder every item")
async def reindex_items(sequence_id: str, request: Request):
    body = await _json_body(request)
    item_ids = body.get("item_ids")
    if not isinstance(item_ids, list):
        raise ValidationFailure("item_ids must be a list")
    return sequence_model.reindex_items(sequence_id, item_ids)


@router.patch("/api/v1/sequences/{sequence_id}/items/{item_id}", summary="Edit an item")
async def update_item(sequence_id: str, item_id: str, request: Request):
    return sequence_model.update_item(sequence_id, item_id, await _json_body(request))


@router.delete("/api/v1/sequences/{sequence_id}/items/{item_id}", summary="Remove an item")
async def remove_item(sequence_id: str, item_id: str):
    return sequence_model.remove_item(sequence_id, item_id)


# ---------------------------------------------------------------------------
# Participants, leaderboard, analytics
# ---------------------------------------------------------------------------

@router.get("/api/v1/sequences/{sequence_id}/participants", summary="List participants")
async def list_participants(
    sequence_id: str,
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    sequence_model.get_sequence(sequence_id)
    if status and status not in progression.PARTICIPANT_STATUSES:
        raise ValidationFailure(f"Unknown participant status: {status}")
    with db.store_errors("list participants"):
        results = db.get_participants(sequence_id, status=status, limit=limit, offset=offset)
    return {"count": len(results), "limit": limit, "offset": offset, "results": results}


@router.get("/api/v1/sequences/{sequence_id}/leaderboard", summary="Points leaderboard")
async def leaderboard(sequence_id: str, limit: int = Query(10, ge=1, le=100)):
    return {"results": progression.get_leaderboard(sequence_id, limit)}


@router.get("/api/v1/sequences/{sequence_id}/analytics", summary="Funnel analytics snapshot")
async def analytics(
    sequence_id: str,
    start: Optional[str] = Query(None, description="ISO-8601, defaults to 30 days ago"),
    end: Optional[str] = Query(None, description="ISO-8601, defaults to now"),
    timeout: Optional[float] = Query(None, gt=0, le=120),
):
    sequence_model.get_sequence(sequence_id)
    return await attribution.get_analytics(
        sequence_id, _query_ts(start, "start"), _query_ts(end, "end"), timeout=timeout,
    )


@router.get("/api/v1/sequences/{sequence_id}/stats", summary="Completion, conversion and revenue stats")
async def stats(
    sequence_id: str,
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
):
    sequence_model.get_sequence(sequence_id)
    return attribution.get_sequence_stats(
        sequence_id, _query_ts(start, "start"), _query_ts(end, "end"),
    )


@router.get("/api/v1/sequences/{sequence_id}/conversion-rates", summary="Step conversion rates")
async def conversion_rates(
    sequence_id: str,
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
):
    steps = attribution.get_step_conversion_rates(
        sequence_id, _query_ts(start, "start"), _query_ts(end, "end"),
    )
    return {"sequence_id": sequence_id, "steps": steps}


@router.get("/api/v1/revenue/by-source", summary="Purchase revenue by acquisition source")
async def revenue_by_source(
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    sequence_id: Optional[str] = Query(None),
):
    rows = attribution.get_revenue_by_source(
        _query_ts(start, "start"), _query_ts(end, "end"), sequence_id=sequence_id,
    )
    return {"results": rows}
