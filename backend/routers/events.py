import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from backend.security import require_admin, require_session
from backend.store import ParticipantStore, StoreError, get_store
from database.db import add_activity, add_event, get_all_events, get_event_by_id

router = APIRouter()


class EventCreate(BaseModel):
    name: str


class ActivityCreate(BaseModel):
    name: str


def require_event(event_id: int) -> dict:
    event = get_event_by_id(event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found.")
    return event


@router.get("/events")
def events(_session: dict = Depends(require_session)):
    return get_all_events()


@router.post("/events")
def create_event(payload: EventCreate, _session: dict = Depends(require_admin)):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Event name is required.")
    new_id = add_event(name)
    return {"id": new_id, "name": name}


@router.get("/events/{event_id}/activities")
async def event_activities(
    event_id: int,
    _session: dict = Depends(require_session),
    store: ParticipantStore = Depends(get_store),
):
    await run_in_threadpool(require_event, event_id)
    try:
        activities = await store.list_activities_for_event(event_id)
    except StoreError:
        raise HTTPException(status_code=502, detail="Failed to load activities")
    return [{"id": a.id, "event_id": a.event_id, "name": a.name} for a in activities]


@router.post("/events/{event_id}/activities")
def create_activity(event_id: int, payload: ActivityCreate, _session: dict = Depends(require_admin)):
    require_event(event_id)
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Activity name is required.")
    try:
        new_id = add_activity(event_id, name)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Activity could not be created.")
    return {"id": new_id, "event_id": event_id, "name": name}
