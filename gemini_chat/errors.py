"""Error taxonomy shared by the services and the HTTP layer."""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional

_MODEL_PATTERN = re.compile(r"model", re.IGNORECASE)
_NOT_FOUND_PATTERN = re.compile(r"not\s+found", re.IGNORECASE)


class ChatBackendError(Exception):
    """Base class; ``status_code`` is what the HTTP layer answers with."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationMissing(ChatBackendError):
    """A required credential or environment value is absent."""


class InvalidRequest(ChatBackendError):
    status_code = 400


class ConversationNotFound(ChatBackendError):
    status_code = 404

    def __init__(self, conversation_id: str):
        super().__init__(f"Chat {conversation_id} not found.")
        self.conversation_id = conversation_id


class ConversationBusy(ChatBackendError):
    status_code = 409


class PayloadTooLarge(ChatBackendError):
    status_code = 413

    def __init__(self, total_bytes: int, limit: int):
        super().__init__(
            f"Attached images are too large ({total_bytes} bytes, limit {limit}). "
            "Remove some images and try again."
        )
        self.total_bytes = total_bytes
        self.limit = limit


class UpstreamError(ChatBackendError):
    """Non-2xx answer from the generative API, surfaced verbatim."""

    def __init__(self, status_code: Optional[int], message: str):
        super().__init__(message)
        self.status_code = status_code or 500


class ModelUnavailable(UpstreamError):
    """Upstream failure carrying the "model not found / invalid" signature."""


def is_model_unavailable(status_code: Optional[int], message: Optional[str]) -> bool:
    message = message or ""
    return (
        status_code in (400, 404)
        or bool(_MODEL_PATTERN.search(message))
        or bool(_NOT_FOUND_PATTERN.search(message))
    )


def upstream_error(status_code: Optional[int], message: Optional[str]) -> UpstreamError:
    """Build the right UpstreamError subclass for an API failure."""
    text = message or f"Gemini API returned {status_code}"
    if is_model_unavailable(status_code, message):
        return ModelUnavailable(status_code, text)
    return UpstreamError(status_code, text)


class FailureKind(str, Enum):
    CORS = "cors"
    AUTH = "auth"
    NETWORK = "network"
    UNKNOWN = "unknown"


class StorageError(ChatBackendError):
    kind: FailureKind = FailureKind.UNKNOWN

    def __init__(self, message: str, bucket: Optional[str] = None):
        super().__init__(message)
        self.bucket = bucket


class StorageTransientError(StorageError):
    """``cors`` or ``network`` failures: retried, then rotated to the next bucket."""

    status_code = 503

    def __init__(self, message: str, kind: FailureKind = FailureKind.NETWORK, bucket: Optional[str] = None):
        super().__init__(message, bucket)
        self.kind = kind


class StorageAuthError(StorageError):
    kind = FailureKind.AUTH
    status_code = 403


class StorageUnknownError(StorageError):
    kind = FailureKind.UNKNOWN


# ---------------------------------------------------------------------------
# Human readable messages
# ---------------------------------------------------------------------------
_STATUS_MESSAGES = {
    403: "Access denied or invalid API key.",
    405: "Method not allowed (405). Check the backend.",
    429: "Too many requests. Wait a few seconds.",
    500: "Internal server error (500).",
}


def describe_failure(exc: BaseException) -> str:
    """Short message suitable for a status banner."""
    if isinstance(exc, ModelUnavailable):
        return f"Model unavailable: {exc.message}"
    if isinstance(exc, UpstreamError):
        return _STATUS_MESSAGES.get(exc.status_code, f"API error ({exc.status_code}).")
    if isinstance(exc, StorageError):
        return f"Upload failed ({exc.kind.value}): {exc.message}"
    if isinstance(exc, ChatBackendError):
        return exc.message
    message = str(exc).strip()
    return message or "Connection error. Try again shortly."
