"""Promote attachments to Cloud Storage (Firebase Storage) objects.

Uploads go to the primary bucket first and rotate through the configured
fallbacks. Within one bucket, transient failures are retried a fixed number
of times with a fixed delay. A CORS preflight probe guards each batch so a
misconfigured bucket fails fast instead of burning the retry budget.
"""

from __future__ import annotations

import logging
import re
import secrets
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

import requests
from google.api_core import exceptions as gexc
from google.auth import exceptions as auth_exceptions
from google.cloud import storage
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from ..errors import (
    FailureKind,
    StorageAuthError,
    StorageError,
    StorageTransientError,
    StorageUnknownError,
)
from ..models.domain import Attachment, UploadStatus

logger = logging.getLogger(__name__)

UPLOAD_ROOT = "uploads"
TRANSIENT_KINDS = (FailureKind.CORS, FailureKind.NETWORK)
_CORS_PATTERN = re.compile(r"cors|cross-origin|preflight", re.IGNORECASE)
_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")

StatusCallback = Callable[[str, str, Dict[str, Any]], None]


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------
def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, StorageError):
        return exc.kind
    if isinstance(exc, gexc.Unauthorized):
        return FailureKind.CORS
    if isinstance(exc, gexc.Forbidden):
        return FailureKind.AUTH
    if isinstance(
        exc,
        (
            gexc.DeadlineExceeded,
            gexc.RetryError,
            gexc.ServiceUnavailable,
            auth_exceptions.TransportError,
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
            TimeoutError,
            ConnectionError,
        ),
    ):
        return FailureKind.NETWORK
    if _CORS_PATTERN.search(str(exc)):
        return FailureKind.CORS
    return FailureKind.UNKNOWN


def as_storage_error(exc: BaseException, bucket: Optional[str] = None) -> StorageError:
    if isinstance(exc, StorageError):
        return exc
    kind = classify_failure(exc)
    message = str(exc) or exc.__class__.__name__
    if kind in TRANSIENT_KINDS:
        return StorageTransientError(message, kind=kind, bucket=bucket)
    if kind is FailureKind.AUTH:
        return StorageAuthError(message, bucket=bucket)
    return StorageUnknownError(message, bucket=bucket)


# ---------------------------------------------------------------------------
# Reachability probe
# ---------------------------------------------------------------------------
@dataclass
class ProbeResult:
    reachable: bool
    detail: str = ""
    checked_at: float = 0.0


class ReachabilityProbe:
    """CORS preflight against the storage endpoint, cached per bucket.

    A result is reused until ``ttl`` seconds have passed; ``invalidate``
    forgets one bucket (or all of them).
    """

    def __init__(
        self,
        endpoint: str,
        origin: str,
        ttl: float = 300.0,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.origin = origin
        self.ttl = ttl
        self.timeout = timeout
        self._session = session or requests.Session()
        self._clock = clock
        self._cache: Dict[str, ProbeResult] = {}

    def get(self, bucket: str) -> ProbeResult:
        cached = self._cache.get(bucket)
        if cached is not None and self._clock() - cached.checked_at < self.ttl:
            return cached
        result = self._check(bucket)
        self._cache[bucket] = result
        return result

    def invalidate(self, bucket: Optional[str] = None) -> None:
        if bucket is None:
            self._cache.clear()
        else:
            self._cache.pop(bucket, None)

    def _check(self, bucket: str) -> ProbeResult:
        url = f"{self.endpoint}/v0/b/{bucket}/o"
        try:
            resp = self._session.options(
                url,
                headers={
                    "Origin": self.origin,
                    "Access-Control-Request-Method": "POST",
                    "Access-Control-Request-Headers": "authorization,content-type",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Storage probe for bucket %s failed: %s", bucket, exc)
            return ProbeResult(False, f"network error: {exc}", self._clock())

        allowed = resp.headers.get("Access-Control-Allow-Origin")
        if resp.status_code >= 400:
            detail = f"preflight answered {resp.status_code}"
        elif allowed not in ("*", self.origin):
            detail = f"origin {self.origin} not allowed"
        else:
            return ProbeResult(True, "ok", self._clock())

        logger.warning("Storage bucket %s unreachable for cross-origin requests: %s", bucket, detail)
        return ProbeResult(False, detail, self._clock())


# ---------------------------------------------------------------------------
# Uploader
# ---------------------------------------------------------------------------
@dataclass
class UploadedImage:
    url: str
    mime_type: str
    name: str
    size_bytes: int
    bucket: str
    path: str = ""
    attachment_id: str = field(default="", repr=False)


def download_url(bucket: str, path: str, token: str) -> str:
    """Durable Firebase Storage download URL for an object."""
    return (
        f"https://firebasestorage.googleapis.com/v0/b/{bucket}/o/"
        f"{quote(path, safe='')}?alt=media&token={token}"
    )


class AttachmentUploader:
    def __init__(
        self,
        client: storage.Client,
        buckets: Iterable[str],
        probe: Optional[ReachabilityProbe] = None,
        max_attempts: int = 3,
        retry_delay: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.buckets = [b for b in buckets if b]
        if not self.buckets:
            raise ValueError("at least one storage bucket is required")
        self.probe = probe
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def upload(
        self,
        attachments: Iterable[Attachment],
        owner_id: str,
        on_status: Optional[StatusCallback] = None,
    ) -> List[UploadedImage]:
        """Upload every attachment that still holds its file.

        Either every pending attachment ends up ``success`` or the batch
        raises, after reporting ``error`` once for each attempted attachment.
        """
        pending = [a for a in attachments if a.has_file]
        if not pending:
            return []

        primary = self.buckets[0]
        if self.probe is not None:
            result = self.probe.get(primary)
            if not result.reachable:
                error = StorageTransientError(
                    f"Storage bucket '{primary}' is not reachable for cross-origin requests "
                    f"({result.detail}). Check the bucket CORS configuration.",
                    kind=FailureKind.CORS,
                    bucket=primary,
                )
                self._fail(pending, error, on_status)
                raise error

        uploaded: List[UploadedImage] = []
        attempted: List[Attachment] = []
        for index, attachment in enumerate(pending):
            attempted.append(attachment)
            try:
                uploaded.append(self._upload_one(attachment, owner_id, index, on_status))
            except StorageError as exc:
                self._fail(attempted, exc, on_status)
                raise
        logger.info("Uploaded %d attachment(s) for %s", len(uploaded), owner_id)
        return uploaded

    @staticmethod
    def build_path(owner_id: str, index: int, name: str) -> str:
        safe_name = _UNSAFE_NAME.sub("_", name or "").strip("._") or "image"
        stamp = int(time.time() * 1000)
        return f"{UPLOAD_ROOT}/{owner_id}/{stamp}-{index}-{secrets.token_hex(3)}-{safe_name}"

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _upload_one(
        self,
        attachment: Attachment,
        owner_id: str,
        index: int,
        on_status: Optional[StatusCallback],
    ) -> UploadedImage:
        path = self.build_path(owner_id, index, attachment.name)
        self._notify(attachment, UploadStatus.UPLOADING, on_status)

        last_error: Optional[StorageError] = None
        for bucket in self.buckets:
            try:
                url = self._retrying(attachment, bucket, on_status)(self._put, bucket, path, attachment)
            except Exception as exc:
                last_error = as_storage_error(exc, bucket)
                if last_error.kind in TRANSIENT_KINDS:
                    logger.warning(
                        "Upload of %s to bucket %s failed (%s), trying next bucket",
                        attachment.name, bucket, last_error.kind.value,
                    )
                    continue
                logger.error("Upload of %s to bucket %s aborted: %s", attachment.name, bucket, exc)
                raise last_error from exc

            attachment.bucket = bucket
            self._notify(attachment, UploadStatus.SUCCESS, on_status, url=url, bucket=bucket)
            return UploadedImage(
                url=url,
                mime_type=attachment.mime_type,
                name=attachment.name,
                size_bytes=attachment.size_bytes,
                bucket=bucket,
                path=path,
                attachment_id=attachment.id,
            )

        raise last_error or StorageTransientError("No storage bucket accepted the upload")

    def _retrying(self, attachment: Attachment, bucket: str, on_status: Optional[StatusCallback]) -> Retrying:
        def _before_sleep(retry_state) -> None:
            exc = retry_state.outcome.exception()
            logger.info(
                "Retrying upload of %s to %s (attempt %d/%d): %s",
                attachment.name, bucket, retry_state.attempt_number, self.max_attempts, exc,
            )
            self._notify(
                attachment, UploadStatus.RETRYING, on_status,
                error=str(exc), attempt=retry_state.attempt_number, bucket=bucket,
            )

        return Retrying(
            retry=retry_if_exception(lambda exc: classify_failure(exc) in TRANSIENT_KINDS),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_delay),
            sleep=self._sleep,
            before_sleep=_before_sleep,
            reraise=True,
        )

    def _put(self, bucket: str, path: str, attachment: Attachment) -> str:
        token = str(uuid.uuid4())
        blob = self.client.bucket(bucket).blob(path)
        blob.metadata = {"firebaseStorageDownloadTokens": token}
        blob.upload_from_string(attachment.content, content_type=attachment.file_mime_type or attachment.mime_type)
        return download_url(bucket, path, token)

    def _fail(self, attempted: List[Attachment], error: StorageError, on_status: Optional[StatusCallback]) -> None:
        for attachment in attempted:
            self._notify(attachment, UploadStatus.ERROR, on_status, error=error.message, kind=error.kind.value)

    @staticmethod
    def _notify(
        attachment: Attachment,
        status: UploadStatus,
        on_status: Optional[StatusCallback],
        **metadata: Any,
    ) -> None:
        attachment.mark(status, url=metadata.get("url"), error=metadata.get("error"))
        if on_status is not None:
            on_status(attachment.id, status.value, metadata)
