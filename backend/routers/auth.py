import logging
import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import issue_session_token, leader_id_from_claims, require_session
from database.db import create_tables, verify_leader_credentials

router = APIRouter()
logger = logging.getLogger(__name__)


class LeaderLogin(BaseModel):
    username: str
    password: str


def _issue_leader_token(payload: LeaderLogin) -> dict:
    username = payload.username.strip()
    password = payload.password.strip()

    if not username:
        raise HTTPException(status_code=400, detail="Username is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        leader = verify_leader_credentials(username, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., lifespan skipped).
        try:
            create_tables()
            leader = verify_leader_credentials(username, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not leader:
        logger.info("Rejected login for %s", username)
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    token, claims = issue_session_token(
        leader["username"],
        leader_id=leader["id"],
        role=leader["role"],
    )
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "username": claims["sub"],
        "leader_id": claims["lid"],
        "display_name": leader["display_name"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.post("/auth/login")
def leader_login(payload: LeaderLogin):
    return _issue_leader_token(payload)


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    return {
        "username": session.get("sub"),
        "leader_id": leader_id_from_claims(session),
        "role": session.get("role", "leader"),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
