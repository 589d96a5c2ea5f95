"""CRUD routes for users, their medication schedules and care relationships.

These are the calls the onboarding wizard and the caretaker dashboard
make.  Schedule bodies are validated by ``MedicationSchedule`` before they
reach the store, so a malformed schedule is a 422 and never a write.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Query, Request
from redis.exceptions import RedisError

from src.api.routes import get_service
from src.api.schemas import (
    IntakeRequest,
    MedicationLinkRequest,
    UserCreateRequest,
    UserUpdateRequest,
)
from src.services.schedule import MedicationSchedule
from src.services.session_keys import IdentityBundle

logger = logging.getLogger(__name__)

router = APIRouter()


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"{what} not found")


# ── Users ────────────────────────────────────────────────────────────


@router.post("/users", status_code=201)
async def create_user(body: UserCreateRequest, request: Request):
    store = get_service(request, "store")
    user = await asyncio.to_thread(
        store.create_user,
        body.id,
        first_name=body.first_name,
        last_name=body.last_name,
        emails=body.emails,
        phones=body.phones,
        age=body.age,
        role=body.role,
        sex=body.sex,
        language=body.language,
    )
    if user is None:
        raise HTTPException(status_code=409, detail="Phone number already registered")
    return {"success": True, "user": user}


@router.get("/users/{user_id}")
async def get_user(user_id: str, request: Request):
    store = get_service(request, "store")
    user = await asyncio.to_thread(store.get_user, user_id)
    if user is None:
        raise _not_found("User")
    return {"success": True, "user": user}


@router.patch("/users/{user_id}")
async def update_user(user_id: str, body: UserUpdateRequest, request: Request):
    store = get_service(request, "store")
    if await asyncio.to_thread(store.get_user, user_id) is None:
        raise _not_found("User")
    user = await asyncio.to_thread(store.update_user, user_id, body.to_properties())
    if user is None:
        raise HTTPException(status_code=409, detail="Phone number already registered")
    return {"success": True, "user": user}


@router.delete("/users/{user_id}")
async def delete_user(user_id: str, request: Request):
    """Delete the user from the graph and drop their conversation history."""
    store = get_service(request, "store")
    memory = get_service(request, "memory")

    user = await asyncio.to_thread(store.get_user, user_id)
    if user is None:
        raise _not_found("User")
    await asyncio.to_thread(store.delete_user, user_id)

    identity = IdentityBundle(phone=user.get("phone"), user_id=user_id)
    try:
        await asyncio.to_thread(memory.clear, identity)
    except RedisError:
        logger.warning("Could not clear conversation history for user %s", user_id, exc_info=True)
    return {"success": True}


# ── Medications ──────────────────────────────────────────────────────


@router.get("/medications/search")
async def search_medications(
    request: Request,
    q: str = Query(..., min_length=1, max_length=100),
    limit: int = Query(default=5, ge=1, le=50),
):
    store = get_service(request, "store")
    medications = await asyncio.to_thread(store.search_medications, q, limit)
    return {"success": True, "medications": medications}


@router.get("/users/{user_id}/medications")
async def list_user_medications(user_id: str, request: Request):
    store = get_service(request, "store")
    medications = await asyncio.to_thread(store.get_user_medications, user_id)
    return {"success": True, "medications": medications}


@router.post("/users/{user_id}/medications", status_code=201)
async def add_user_medication(user_id: str, body: MedicationLinkRequest, request: Request):
    store = get_service(request, "store")

    medication_id = body.medication_id
    if not medication_id:
        if not body.name or not body.name.strip():
            raise HTTPException(status_code=422, detail="medicationId or name is required")
        medication = await asyncio.to_thread(
            store.create_medication,
            body.name,
            brand_name=body.brand_name,
            generic_name=body.generic_name,
        )
        medication_id = medication["id"]

    linked = await asyncio.to_thread(
        store.link_user_to_medication, user_id, medication_id, body.schedule,
    )
    if linked is None:
        raise _not_found("User or medication")
    return {"success": True, **linked}


@router.put("/users/{user_id}/medications/{medication_id}")
async def update_user_medication(
    user_id: str,
    medication_id: str,
    schedule: MedicationSchedule,
    request: Request,
):
    store = get_service(request, "store")
    updated = await asyncio.to_thread(
        store.update_medication_schedule, user_id, medication_id, schedule,
    )
    if updated is None:
        raise _not_found("Medication schedule")
    return {"success": True, **updated}


@router.delete("/users/{user_id}/medications/{medication_id}")
async def delete_user_medication(user_id: str, medication_id: str, request: Request):
    store = get_service(request, "store")
    if not await asyncio.to_thread(store.delete_medication_for_user, user_id, medication_id):
        raise _not_found("Medication schedule")
    return {"success": True}


@router.post("/users/{user_id}/medications/{medication_id}/intake", status_code=201)
async def record_intake(user_id: str, medication_id: str, body: IntakeRequest, request: Request):
    store = get_service(request, "store")
    recorded = await asyncio.to_thread(
        store.record_medication_status,
        user_id,
        medication_id,
        body.date,
        body.scheduled_time,
        body.actual_time,
        body.status,
    )
    if not recorded:
        raise _not_found("User or medication")
    return {"success": True}


@router.get("/users/{user_id}/history")
async def medication_history(
    user_id: str,
    request: Request,
    limit: int = Query(default=30, ge=1, le=365),
):
    store = get_service(request, "store")
    history = await asyncio.to_thread(store.get_medication_history, user_id, limit)
    return {"success": True, "history": history}


@router.get("/users/{user_id}/conversations")
async def conversation_log(
    user_id: str,
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
):
    """Recorded WhatsApp exchanges for the dashboard, oldest first."""
    store = get_service(request, "store")
    user = await asyncio.to_thread(store.get_user, user_id)
    if user is None:
        raise _not_found("User")
    if not user.get("phone"):
        return {"success": True, "conversations": []}
    conversations = await asyncio.to_thread(
        store.get_conversation_history, user["phone"], limit,
    )
    return {"success": True, "conversations": conversations}


# ── Care relationships ───────────────────────────────────────────────


@router.post("/caretakers/{caretaker_id}/elders/{elder_id}", status_code=201)
async def link_caretaker(caretaker_id: str, elder_id: str, request: Request):
    store = get_service(request, "store")
    if not await asyncio.to_thread(store.create_caretaker_relationship, caretaker_id, elder_id):
        raise _not_found("Caretaker or elder")
    return {"success": True}


@router.get("/caretakers/{caretaker_id}/elders")
async def list_caretaker_elders(caretaker_id: str, request: Request):
    store = get_service(request, "store")
    elders = await asyncio.to_thread(store.get_caretaker_elders, caretaker_id)
    return {"success": True, "elders": elders}
