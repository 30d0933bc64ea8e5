import base64
import hashlib
import hmac
import json
import time
from typing import Any

from fastapi import Depends, Header, HTTPException

from backend.config import AUTH_TOKEN_TTL_SECONDS, SIGNING_KEY

IDENTITY_ERROR_DETAIL = "Error: unable to identify scanner."


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str) -> str:
    digest = hmac.new(
        SIGNING_KEY.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


def issue_session_token(
    username: str,
    *,
    leader_id: int | None,
    role: str = "leader",
) -> tuple[str, dict[str, Any]]:
    now = int(time.time())
    exp = now + AUTH_TOKEN_TTL_SECONDS
    payload: dict[str, Any] = {
        "sub": username.strip(),
        "role": role,
        "iat": now,
        "exp": exp,
    }
    if leader_id is not None:
        payload["lid"] = int(leader_id)
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(payload_json.encode("utf-8"))
    token = f"{payload_b64}.{_sign(payload_b64)}"
    return token, payload


def decode_session_token(token: str) -> dict[str, Any] | None:
    if not token or "." not in token:
        return None

    payload_b64, signature = token.split(".", 1)
    expected = _sign(payload_b64)
    if not hmac.compare_digest(signature, expected):
        return None

    try:
        payload_raw = _b64url_decode(payload_b64).decode("utf-8")
        payload = json.loads(payload_raw)
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None

    sub = payload.get("sub")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not sub.strip():
        return None
    if not isinstance(exp, int):
        return None
    if exp < int(time.time()):
        return None

    return payload


def leader_id_from_claims(claims: dict[str, Any] | None) -> int | None:
    if not claims:
        return None
    leader_id = claims.get("lid")
    if isinstance(leader_id, bool) or not isinstance(leader_id, int) or leader_id <= 0:
        return None
    return leader_id


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    payload = decode_session_token(token.strip())
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")

    return payload


def require_admin(session: dict = Depends(require_session)) -> dict[str, Any]:
    if session.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin role required.")
    return session


def require_leader(session: dict = Depends(require_session)) -> int:
    leader_id = leader_id_from_claims(session)
    if leader_id is None:
        raise HTTPException(status_code=403, detail=IDENTITY_ERROR_DETAIL)
    return leader_id
