# chatrelay/core/auth.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from chatrelay.core.settings import AppSettings

logger = logging.getLogger("app.auth")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    principal_id: str
    display_name: str


def decode_access_token(token: str, settings: AppSettings) -> Principal:
    """Verify a bearer token and return the principal it names.

    Raises ValueError for a bad signature, an expired token or a payload
    without ``user_id``.
    """
    try:
        payload: Dict[str, Any] = jwt.decode(
            token, settings.access_token_secret, algorithms=[settings.jwt_algorithm]
        )
    except JWTError as exc:
        raise ValueError(str(exc)) from exc
    user_id = payload.get("user_id")
    if not user_id:
        raise ValueError("token payload has no user_id")
    return Principal(principal_id=str(user_id), display_name=str(payload.get("username") or ""))


def encode_access_token(principal_id: str, display_name: str, settings: AppSettings, **claims: Any) -> str:
    # Token issuance lives in the account service; this is for local tooling and tests
    payload = {"user_id": principal_id, "username": display_name, **claims}
    return jwt.encode(payload, settings.access_token_secret, algorithm=settings.jwt_algorithm)


async def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Unauthorized: Access token is required")
    try:
        return decode_access_token(credentials.credentials, request.app.state.settings)
    except ValueError as exc:
        logger.warning({"event": "token_rejected", "error": str(exc), "path": request.url.path})
        raise HTTPException(status_code=403, detail="Forbidden: Invalid or expired token") from exc
