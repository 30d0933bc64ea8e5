import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from backend.models import Participant, to_payload
from backend.routers.events import require_event
from backend.scanner.decoder import FrameDecodeError, QrDecoder
from backend.security import require_leader, require_session
from backend.services.scan_resolution import (
    CommitError,
    IdentityError,
    ParticipantNotFound,
    ScanRejected,
    ScanValidationError,
    commit_scan,
    preview_scan,
    select_target_activity,
    validate_scan_settings,
)
from backend.store import ParticipantStore, StoreError, get_store
from database.db import get_participant_by_id

router = APIRouter()
logger = logging.getLogger(__name__)


class ScanPreviewRequest(BaseModel):
    scan_type: str | None = None
    activity_id: int | None = None
    qr_code: str


class ScanCommitRequest(BaseModel):
    scan_type: str | None = None
    activity_id: int | None = None
    participant_id: int


async def _scan_settings(store: ParticipantStore, event_id: int, scan_type: str | None, activity_id: int | None):
    try:
        clean_type = validate_scan_settings(scan_type, activity_id)
        target = await select_target_activity(
            store,
            event_id=event_id,
            scan_type=clean_type,
            activity_id=activity_id,
        )
    except ScanValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except StoreError:
        raise HTTPException(status_code=502, detail="Failed to load activities")
    return clean_type, target


@router.post("/events/{event_id}/scans/preview")
async def preview(
    event_id: int,
    payload: ScanPreviewRequest,
    _session: dict = Depends(require_session),
    store: ParticipantStore = Depends(get_store),
):
    await run_in_threadpool(require_event, event_id)
    scan_type, target = await _scan_settings(store, event_id, payload.scan_type, payload.activity_id)

    qr_code = payload.qr_code.strip()
    if not qr_code:
        raise HTTPException(status_code=400, detail="QR code is required.")

    try:
        result = await preview_scan(
            store,
            event_id=event_id,
            qr_code=qr_code,
            scan_type=scan_type,
            target_activity=target,
        )
    except ParticipantNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ScanRejected as e:
        raise HTTPException(status_code=409, detail=e.message)
    except StoreError:
        logger.exception("Error processing QR code %s", qr_code)
        raise HTTPException(status_code=502, detail="Error processing QR code.")

    return {
        "participant": to_payload(result.participant),
        "current_activity": to_payload(result.current_activity),
        "target_activity": to_payload(target),
        "decision_code": result.resolution.decision_code,
        "log_type": result.resolution.log_type,
        "prompt": result.prompt,
    }


@router.post("/events/{event_id}/scans")
async def commit(
    event_id: int,
    payload: ScanCommitRequest,
    leader_id: int = Depends(require_leader),
    store: ParticipantStore = Depends(get_store),
):
    await run_in_threadpool(require_event, event_id)
    scan_type, target = await _scan_settings(store, event_id, payload.scan_type, payload.activity_id)

    row = await run_in_threadpool(get_participant_by_id, payload.participant_id)
    if not row or row["event_id"] != event_id:
        raise HTTPException(status_code=404, detail="Participant not found.")

    try:
        result = await commit_scan(
            store,
            event_id=event_id,
            participant=Participant(**row),
            scan_type=scan_type,
            target_activity=target,
            leader_id=leader_id,
        )
    except IdentityError as e:
        raise HTTPException(status_code=403, detail=e.message)
    except ScanRejected as e:
        raise HTTPException(status_code=409, detail=e.message)
    except CommitError as e:
        raise HTTPException(status_code=502, detail=e.message)

    return {
        "ok": True,
        "log": to_payload(result.log),
        "current_activity_id": result.resolution.new_location_id,
    }


@router.post("/scan/decode")
async def decode_frame(
    _session: dict = Depends(require_session),
    file: UploadFile = File(...),
):
    if file.content_type not in ("image/jpeg", "image/png"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    data = await file.read()
    decoder = QrDecoder()
    try:
        text = await run_in_threadpool(decoder.decode_image_bytes, data)
    except FrameDecodeError:
        raise HTTPException(status_code=400, detail="Invalid image data.")
    finally:
        decoder.close()

    return {"found": text is not None, "text": text}
