"""Authentication helpers (Firebase ID tokens).

This module exposes a single dependency `get_current_user` for FastAPI
routes that validates a Firebase ID token passed via the Authorization
header (Bearer)."""

import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from ..config import Settings, get_settings

security = HTTPBearer(auto_error=False)
_request_adapter = google_requests.Request()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> dict:
    """Validate the incoming bearer token and return a lightweight user dict."""

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        claims = id_token.verify_firebase_token(
            credentials.credentials, _request_adapter, audience=settings.project_id
        )
    except ValueError as e:
        logging.warning(f"Token verification failed: {e}")
        detail = "Token expired. Please sign in again." if "expired" in str(e).lower() else "Invalid token"
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )

    uid = (claims or {}).get("user_id") or (claims or {}).get("sub")
    if not uid:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return {"user_id": uid, "email": claims.get("email")}
