"""Gemini invocation: transports plus the one-hop model fallback."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

import anyio
import requests
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as gt

from ..config import Settings
from ..errors import ModelUnavailable, UpstreamError, upstream_error
from ..models.domain import DEFAULT_MODEL
from .credentials import AccessTokenCache

logger = logging.getLogger(__name__)

NO_REPLY_TEXT = "No response generated"


class GeminiTransport(Protocol):
    async def generate(self, model_id: str, body: Dict[str, Any]) -> str: ...


def extract_text(data: Optional[Dict[str, Any]]) -> str:
    """First text part of the first candidate."""
    candidates = (data or {}).get("candidates") or []
    if candidates:
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        for part in parts:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                return part["text"]
    return NO_REPLY_TEXT


# ──────────────────────────────────────────────────────────────────────────────
# REST transport (service-account bearer token or API key)
# ──────────────────────────────────────────────────────────────────────────────
class RestTransport:
    def __init__(
        self,
        endpoint: str,
        token_cache: Optional[AccessTokenCache] = None,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 60.0,
    ):
        if token_cache is None and not api_key:
            raise ValueError("RestTransport needs a token cache or an API key")
        self.endpoint = endpoint.rstrip("/")
        self.token_cache = token_cache
        self.api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()

    async def generate(self, model_id: str, body: Dict[str, Any]) -> str:
        # requests is blocking; keep the event loop free
        return await anyio.to_thread.run_sync(self._generate_sync, model_id, body)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token_cache is not None:
            headers["Authorization"] = f"Bearer {self.token_cache.get()}"
        else:
            headers["x-goog-api-key"] = self.api_key
        return headers

    def _generate_sync(self, model_id: str, body: Dict[str, Any]) -> str:
        url = f"{self.endpoint}/models/{quote(model_id, safe='')}:generateContent"
        try:
            resp = self._session.post(url, json=body, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Gemini request to %s failed: %s", model_id, exc)
            raise UpstreamError(500, f"Gemini API unreachable: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = None

        if not resp.ok:
            if resp.status_code == 401 and self.token_cache is not None:
                self.token_cache.invalidate()
            message = ((data or {}).get("error") or {}).get("message") if isinstance(data, dict) else None
            raise upstream_error(resp.status_code, message or f"Gemini API returned {resp.status_code}")

        return extract_text(data)


# ──────────────────────────────────────────────────────────────────────────────
# google-genai SDK transport (API key or Vertex AI)
# ──────────────────────────────────────────────────────────────────────────────
def _to_part(part: Dict[str, Any]) -> gt.Part:
    if "text" in part:
        return gt.Part.from_text(text=part["text"])
    if "inline_data" in part:
        blob = part["inline_data"]
        return gt.Part.from_bytes(data=base64.b64decode(blob["data"]), mime_type=blob["mime_type"])
    if "file_data" in part:
        ref = part["file_data"]
        return gt.Part.from_uri(file_uri=ref["file_uri"], mime_type=ref["mime_type"])
    raise ValueError(f"Unsupported part: {sorted(part)}")


def to_sdk_request(body: Dict[str, Any]) -> tuple[List[gt.Content], gt.GenerateContentConfig]:
    """Map the REST-shaped body onto google-genai types."""
    contents = [
        gt.Content(role=turn["role"], parts=[_to_part(p) for p in turn["parts"]])
        for turn in body.get("contents", [])
    ]
    gen_cfg = body.get("generationConfig") or {}
    system = body.get("systemInstruction")
    config = gt.GenerateContentConfig(
        temperature=gen_cfg.get("temperature"),
        top_p=gen_cfg.get("topP"),
        max_output_tokens=gen_cfg.get("maxOutputTokens"),
        system_instruction=system["parts"][0]["text"] if system else None,
    )
    return contents, config


class GenAITransport:
    """Thin wrapper around ``genai.Client`` speaking the REST body shape."""

    def __init__(self, client: genai.Client):
        self.client = client

    async def generate(self, model_id: str, body: Dict[str, Any]) -> str:
        contents, config = to_sdk_request(body)
        try:
            resp = await self.client.aio.models.generate_content(
                model=model_id,
                contents=contents,
                config=config,
            )
        except genai_errors.APIError as exc:
            logger.error("Gen AI error for %s: %s", model_id, exc)
            raise upstream_error(exc.code, exc.message or str(exc)) from exc

        if getattr(resp, "text", None):
            return resp.text
        logger.warning("Empty or filtered response: %s", resp)
        return NO_REPLY_TEXT


def build_transport(settings: Settings) -> GeminiTransport:
    """Pick the transport matching the configured credentials."""
    settings.validate_credentials()
    if settings.google_service_account:
        cache = AccessTokenCache.from_service_account_json(settings.google_service_account)
        return RestTransport(settings.gemini_api_endpoint, token_cache=cache, timeout=settings.request_timeout)
    if settings.gemini_api_key:
        logger.info("Initialising Google Gen AI client (API key) …")
        return GenAITransport(genai.Client(api_key=settings.gemini_api_key))
    logger.info("Initialising Google Gen AI client (Vertex AI, %s) …", settings.model_location)
    return GenAITransport(
        genai.Client(vertexai=True, project=settings.project_id, location=settings.model_location)
    )


# ──────────────────────────────────────────────────────────────────────────────
# Invoker
# ──────────────────────────────────────────────────────────────────────────────
class InvokeState(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass
class InvocationResult:
    text: str
    model_used: str
    fallback_applied: bool = False


class ModelInvoker:
    """Call the requested model; on a model-unavailable failure retry once on
    the default model. ``PRIMARY -> FALLBACK`` is the only transition."""

    def __init__(self, transport: GeminiTransport, default_model: str = DEFAULT_MODEL):
        self.transport = transport
        self.default_model = default_model

    async def invoke(self, model_id: Optional[str], body: Dict[str, Any]) -> InvocationResult:
        model = (model_id or "").strip() or self.default_model
        state = InvokeState.PRIMARY
        while True:
            try:
                text = await self.transport.generate(model, body)
            except UpstreamError as exc:
                if state is InvokeState.FALLBACK:
                    logger.error("Fallback to %s failed (%s): %s", model, exc.status_code, exc.message)
                    raise
                if isinstance(exc, ModelUnavailable) and model != self.default_model:
                    logger.warning(
                        "Model %s unavailable (%s). Falling back to %s",
                        model, exc.status_code, self.default_model,
                    )
                    state, model = InvokeState.FALLBACK, self.default_model
                    continue
                raise
            return InvocationResult(text=text, model_used=model, fallback_applied=state is InvokeState.FALLBACK)
