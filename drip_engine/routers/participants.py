"""Participants API — registration, gating, start/complete and progress."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from drip_engine.routers.sequences import _json_body
from drip_engine.services import progression

router = APIRouter(tags=["Participants"])


@router.post("/api/v1/sequences/{sequence_id}/register", summary="Register (idempotent)")
async def register(sequence_id: str, request: Request):
    body = await _json_body(request)
    return progression.register(
        sequence_id,
        body.get("email", ""),
        source=body.get("source"),
        name=(body.get("name") or "").strip(),
        user_id=body.get("user_id"),
        tags=body.get("tags"),
    )


@router.get("/api/v1/participants/{participant_id}", summary="Get a participant")
async def get_participant(participant_id: str):
    return progression.get_participant(participant_id)


@router.get("/api/v1/participants/{participant_id}/progress", summary="Progress snapshot")
async def get_progress(participant_id: str):
    return progression.get_progress(participant_id)


@router.get("/api/v1/participants/{participant_id}/items/{item_id}/access", summary="Check access")
async def check_access(participant_id: str, item_id: str):
    result = progression.check_access(participant_id, item_id)
    if not result["allowed"]:
        return JSONResponse(status_code=403, content={"error": "access-denied", **result})
    return result


@router.post("/api/v1/participants/{participant_id}/items/{item_id}/start", summary="Start an item")
async def start_item(participant_id: str, item_id: str):
    return progression.record_start(participant_id, item_id)


@router.post("/api/v1/participants/{participant_id}/items/{item_id}/complete", summary="Complete an item")
async def complete_item(participant_id: str, item_id: str, request: Request):
    body = await _json_body(request)
    return progression.record_completion(participant_id, item_id, body.get("measurements"))


@router.post("/api/v1/participants/{participant_id}/pause", summary="Pause")
async def pause(participant_id: str):
    return progression.pause(participant_id)


@router.post("/api/v1/participants/{participant_id}/resume", summary="Resume")
async def resume(participant_id: str):
    return progression.resume(participant_id)


@router.post("/api/v1/participants/{participant_id}/drop", summary="Drop (soft delete)")
async def drop(participant_id: str):
    return progression.drop(participant_id)
