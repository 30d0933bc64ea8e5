import sqlite3

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from backend.routers.events import require_event
from backend.security import require_admin, require_session
from database.db import (
    add_participant,
    get_activity_by_id,
    get_activity_logs,
    get_participant_by_id,
    get_participants_by_event,
)

router = APIRouter(dependencies=[Depends(require_session)])


class ParticipantCreate(BaseModel):
    name: str
    qr_code: str


def _participant_payload(row: dict) -> dict:
    current = get_activity_by_id(row["current_activity_id"]) if row["current_activity_id"] else None
    return {
        **row,
        "current_activity": current,
    }


@router.get("/events/{event_id}/participants")
def participants(event_id: int):
    require_event(event_id)
    return get_participants_by_event(event_id)


@router.post("/events/{event_id}/participants")
def create_participant(event_id: int, payload: ParticipantCreate, _session: dict = Depends(require_admin)):
    require_event(event_id)
    name = payload.name.strip()
    qr_code = payload.qr_code.strip()

    if not name or not qr_code:
        raise HTTPException(status_code=400, detail="All fields are required.")

    try:
        new_id = add_participant(event_id, name, qr_code)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="QR code already assigned in this event.")

    return {
        "id": new_id,
        "event_id": event_id,
        "name": name,
        "qr_code": qr_code,
        "current_activity_id": None,
    }


@router.get("/events/{event_id}/participants/{participant_id}")
def participant_detail(event_id: int, participant_id: int):
    row = get_participant_by_id(participant_id)
    if not row or row["event_id"] != event_id:
        raise HTTPException(status_code=404, detail="Participant not found.")
    return _participant_payload(row)


@router.get("/events/{event_id}/participants/{participant_id}/logs")
def participant_logs(
    event_id: int,
    participant_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    row = get_participant_by_id(participant_id)
    if not row or row["event_id"] != event_id:
        raise HTTPException(status_code=404, detail="Participant not found.")

    return {
        "participant": _participant_payload(row),
        "rows": get_activity_logs(
            event_id=event_id,
            participant_id=participant_id,
            limit=limit,
            offset=offset,
        ),
    }
