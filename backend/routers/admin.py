import sqlite3
from typing import cast

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from backend.security import require_admin
from database.db import (
    LeaderRole,
    LogType,
    clear_activity_logs,
    clear_all_tables,
    create_leader,
    get_activity_logs,
    get_activity_logs_total,
)

router = APIRouter(dependencies=[Depends(require_admin)])
ALLOWED_LOG_TYPES: set[str] = {"departure", "return", "change"}
ALLOWED_ROLES: set[str] = {"admin", "leader"}


class LeaderCreate(BaseModel):
    username: str
    password: str
    display_name: str | None = None
    role: str = "leader"


@router.post("/admin/leaders")
def add_leader(payload: LeaderCreate):
    role = payload.role.strip().lower()
    if role not in ALLOWED_ROLES:
        raise HTTPException(status_code=400, detail="Invalid role.")
    try:
        leader_id = create_leader(
            payload.username,
            payload.password,
            display_name=payload.display_name,
            role=cast(LeaderRole, role),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Username already exists.")
    return {"id": leader_id, "username": payload.username.strip(), "role": role}


@router.post("/admin/reset/logs")
def reset_logs():
    ok = clear_activity_logs()
    if not ok:
        raise HTTPException(status_code=400, detail="Activity log table not found. Check DB schema.")
    return {"ok": True, "message": "Activity logs cleared and all participants returned"}


@router.post("/admin/reset/hard")
def reset_hard():
    clear_all_tables()
    return {"ok": True, "message": "Reset complete: events, activities, participants and logs cleared"}


@router.get("/admin/activity-logs")
def list_activity_logs(
    event_id: int | None = None,
    participant_id: int | None = None,
    activity_id: int | None = None,
    leader_id: int | None = None,
    log_type: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    clean_type = log_type.strip().lower() if log_type else None
    if clean_type and clean_type not in ALLOWED_LOG_TYPES:
        raise HTTPException(status_code=400, detail="Invalid log_type filter.")

    typed_log_type = cast(LogType | None, clean_type)
    filters = {
        "event_id": event_id,
        "participant_id": participant_id,
        "activity_id": activity_id,
        "leader_id": leader_id,
        "log_type": typed_log_type,
    }
    rows = get_activity_logs(**filters, limit=limit, offset=offset)
    total = get_activity_logs_total(**filters)
    return {
        "rows": rows,
        "total": total,
        "limit": limit,
        "offset": offset,
    }
