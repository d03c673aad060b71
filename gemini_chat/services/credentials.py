"""Bearer credentials for the Gemini REST endpoint."""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import service_account

from ..errors import ConfigurationMissing, UpstreamError

logger = logging.getLogger(__name__)

GENERATIVE_LANGUAGE_SCOPE = "https://www.googleapis.com/auth/generative-language"
REFRESH_MARGIN_SECONDS = 60
MAX_TOKEN_LIFETIME_SECONDS = 3600
_REQUIRED_FIELDS = ("private_key", "client_email", "token_uri")


def load_service_account_info(raw: Optional[str]) -> Dict[str, Any]:
    """Parse the service-account JSON held in an environment variable."""
    if not raw:
        raise ConfigurationMissing("Missing GOOGLE_SERVICE_ACCOUNT environment variable")
    try:
        info = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationMissing(f"Invalid GOOGLE_SERVICE_ACCOUNT JSON: {exc}") from exc
    missing = [key for key in _REQUIRED_FIELDS if not info.get(key)]
    if missing:
        raise ConfigurationMissing(f"Service account JSON missing required fields: {', '.join(missing)}")
    return info


class AccessTokenCache:
    """Short-lived bearer token from a service account, reused until near expiry.

    ``get()`` returns the cached token while it has more than
    ``REFRESH_MARGIN_SECONDS`` left, otherwise it signs a fresh JWT assertion
    and exchanges it at the account's ``token_uri``. ``invalidate()`` forces
    the next ``get()`` to exchange again.
    """

    def __init__(
        self,
        credentials: service_account.Credentials,
        clock: Callable[[], float] = time.time,
        request: Optional[google_requests.Request] = None,
    ):
        self._credentials = credentials
        self._clock = clock
        self._request = request or google_requests.Request()
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    @classmethod
    def from_service_account_json(cls, raw: Optional[str], **kwargs: Any) -> "AccessTokenCache":
        info = load_service_account_info(raw)
        credentials = service_account.Credentials.from_service_account_info(
            info, scopes=[GENERATIVE_LANGUAGE_SCOPE]
        )
        logger.info("Using service account %s for Gemini", info["client_email"])
        return cls(credentials, **kwargs)

    @property
    def expires_at(self) -> float:
        return self._expires_at

    def get(self) -> str:
        with self._lock:
            now = self._clock()
            if self._token and self._expires_at - REFRESH_MARGIN_SECONDS > now:
                return self._token
            try:
                self._credentials.refresh(self._request)
            except GoogleAuthError as exc:
                logger.error("Service account token exchange failed: %s", exc)
                raise UpstreamError(500, f"Failed to exchange service account JWT for access token: {exc}") from exc

            if not self._credentials.token:
                raise UpstreamError(500, "Access token missing in token response")

            lifetime = MAX_TOKEN_LIFETIME_SECONDS
            expiry = getattr(self._credentials, "expiry", None)
            if isinstance(expiry, datetime):
                # google-auth keeps expiry as a naive UTC datetime
                remaining = expiry.replace(tzinfo=timezone.utc).timestamp() - time.time()
                lifetime = min(lifetime, max(0.0, remaining))
            self._token = self._credentials.token
            self._expires_at = now + lifetime
            logger.debug("Fetched new access token, valid for %.0fs", lifetime)
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0
