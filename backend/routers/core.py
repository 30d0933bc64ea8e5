from fastapi import APIRouter, Depends, HTTPException

from backend.config import (
    DB_PATH,
    ENABLE_DEBUG_ENDPOINTS,
    LOCATION_COMPARE_AND_SWAP,
    SCANNER_CONFIRM_REARM_SECONDS,
    SCANNER_ERROR_COOLDOWN_SECONDS,
    SCANNER_IDLE_TIMEOUT_SECONDS,
    SCANNER_RESET_DELAY_SECONDS,
)
from backend.security import require_session

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_session)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/scanner")
def scanner_config():
    return {
        "idle_timeout_seconds": SCANNER_IDLE_TIMEOUT_SECONDS,
        "error_cooldown_seconds": SCANNER_ERROR_COOLDOWN_SECONDS,
        "confirm_rearm_seconds": SCANNER_CONFIRM_REARM_SECONDS,
        "reset_delay_seconds": SCANNER_RESET_DELAY_SECONDS,
        "location_compare_and_swap": LOCATION_COMPARE_AND_SWAP,
    }
