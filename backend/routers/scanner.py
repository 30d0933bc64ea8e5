import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

from backend.scanner.controller import ScannerController
from backend.scanner.machine import ScanSettings, snapshot_payload
from backend.security import IDENTITY_ERROR_DETAIL, decode_session_token, leader_id_from_claims
from backend.services.scan_resolution import (
    ScanValidationError,
    select_target_activity,
    validate_scan_settings,
)
from backend.store import ParticipantStore, StoreError, get_store
from database.db import get_event_by_id

router = APIRouter()
logger = logging.getLogger(__name__)


def _parse_activity_id(value) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _load_settings(
    store: ParticipantStore,
    event_id: int,
    scan_type: str | None,
    activity_id: int | None,
) -> ScanSettings:
    clean_type = validate_scan_settings(scan_type, activity_id)
    target = await select_target_activity(
        store,
        event_id=event_id,
        scan_type=clean_type,
        activity_id=activity_id,
    )
    return ScanSettings(scan_type=clean_type, target_activity=target)


@router.websocket("/events/{event_id}/scanner")
async def scanner_session(
    websocket: WebSocket,
    event_id: int,
    token: str | None = None,
    scan_type: str | None = None,
    activity_id: str | None = None,
    store: ParticipantStore = Depends(get_store),
):
    claims = decode_session_token(token or "")
    if not claims:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid or expired session token.")
        return

    leader_id = leader_id_from_claims(claims)
    if leader_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=IDENTITY_ERROR_DETAIL)
        return

    if not await run_in_threadpool(get_event_by_id, event_id):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Event not found.")
        return

    await websocket.accept()

    try:
        settings = await _load_settings(store, event_id, scan_type, _parse_activity_id(activity_id))
    except ScanValidationError as e:
        await websocket.send_json({"type": "validation_error", "message": e.message})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    except StoreError:
        await websocket.send_json({"type": "error", "message": "Failed to load activities"})
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    logger.info("Scanner opened by leader %s for event %s (%s)", leader_id, event_id, settings.scan_type)

    async with ScannerController(
        store,
        event_id=event_id,
        leader_id=leader_id,
        settings=settings,
        notify=websocket.send_json,
    ) as controller:
        await websocket.send_json(snapshot_payload(controller.snapshot))
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break

                if message.get("bytes") is not None:
                    await controller.frame_received(message["bytes"])
                    continue

                try:
                    data = json.loads(message.get("text") or "")
                except ValueError:
                    await websocket.send_json({"type": "error", "message": "Malformed message."})
                    continue
                if not isinstance(data, dict):
                    await websocket.send_json({"type": "error", "message": "Malformed message."})
                    continue

                kind = data.get("type")
                if kind == "camera":
                    await controller.camera_probed(bool(data.get("granted")))
                elif kind == "decoded":
                    await controller.code_decoded(str(data.get("text") or ""))
                elif kind == "camera_error":
                    await controller.camera_error(data.get("message"))
                elif kind == "confirm":
                    await controller.confirm()
                elif kind == "cancel":
                    await controller.cancel()
                elif kind == "reset":
                    await controller.reset()
                elif kind == "settings":
                    try:
                        new_settings = await _load_settings(
                            store,
                            event_id,
                            data.get("scan_type"),
                            _parse_activity_id(data.get("activity_id")),
                        )
                    except ScanValidationError as e:
                        await websocket.send_json({"type": "validation_error", "message": e.message})
                        continue
                    except StoreError:
                        await websocket.send_json({"type": "error", "message": "Failed to load activities"})
                        continue
                    await controller.change_settings(new_settings)
                else:
                    await websocket.send_json({"type": "error", "message": f"Unknown message type: {kind}"})
        except WebSocketDisconnect:
            pass

    logger.info("Scanner closed by leader %s for event %s", leader_id, event_id)
