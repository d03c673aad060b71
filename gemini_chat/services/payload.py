"""Assemble the ``generateContent`` request body.

Output shape::

    {
      "contents": [{"role": "user"|"model", "parts": [...]}, ...],
      "generationConfig": {"temperature": .., "topP": .., "maxOutputTokens": ..},
      "systemInstruction": {"parts": [{"text": ..}]},   # only with instructions
    }
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..errors import PayloadTooLarge
from ..models.api_io import PartPayload
from ..models.domain import GenerationParams, ImageRef, Message
from .transcoder import estimate_base64_bytes

DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.9
DEFAULT_MAX_OUTPUT_TOKENS = 1024
DEFAULT_GREETING = "Hello Gemini!"
MAX_MESSAGE_INLINE_BYTES = 4_000_000

Part = Dict[str, Any]
Turn = Dict[str, Any]


def dedupe_images(images: Iterable[ImageRef]) -> List[ImageRef]:
    """Drop repeated inline images; the first ``(mime_type, data)`` wins."""
    seen: Set[Tuple[str, str]] = set()
    unique: List[ImageRef] = []
    for image in images:
        if image.inline_data:
            signature = (image.mime_type, image.inline_data)
            if signature in seen:
                continue
            seen.add(signature)
        unique.append(image)
    return unique


def check_inline_budget(images: Iterable[ImageRef], limit: int = MAX_MESSAGE_INLINE_BYTES) -> int:
    """Raise PayloadTooLarge if the inline images of one message exceed *limit*."""
    total = sum(estimate_base64_bytes(image.inline_data) for image in images)
    if total > limit:
        raise PayloadTooLarge(total, limit)
    return total


def _image_key(image: ImageRef) -> Tuple[str, str]:
    if image.inline_data:
        return (image.mime_type, image.inline_data)
    return ("url", image.url or "")


def image_part(image: ImageRef) -> Optional[Part]:
    if image.inline_data:
        return {"inline_data": {"mime_type": image.mime_type, "data": image.inline_data}}
    if image.url:
        return {"file_data": {"mime_type": image.mime_type, "file_uri": image.url}}
    return None


def _text_part(text: Optional[str]) -> Optional[Part]:
    text = (text or "").strip()
    return {"text": text} if text else None


def _message_turn(message: Message) -> Optional[Turn]:
    parts = [p for p in [_text_part(message.content)] if p]
    parts += [p for p in (image_part(i) for i in message.images) if p]
    if not parts:
        return None
    return {"role": "model" if message.role == "assistant" else "user", "parts": parts}


def _structured_parts(parts: Sequence[PartPayload], seen: Set[Tuple[str, str]]) -> List[Part]:
    out: List[Part] = []
    for part in parts:
        if part.type == "text":
            text_part = _text_part(part.text)
            if text_part:
                out.append(text_part)
            continue
        image = part.to_image_ref()
        if _image_key(image) in seen:
            continue
        seen.add(_image_key(image))
        built = image_part(image)
        if built:
            out.append(built)
    return out


def generation_config(params: Optional[GenerationParams]) -> Dict[str, Any]:
    params = params or GenerationParams()
    return {
        "temperature": params.temperature if params.temperature is not None else DEFAULT_TEMPERATURE,
        "topP": params.top_p if params.top_p is not None else DEFAULT_TOP_P,
        "maxOutputTokens": (
            params.max_output_tokens if params.max_output_tokens is not None else DEFAULT_MAX_OUTPUT_TOKENS
        ),
    }


def build_request_body(
    text: Optional[str] = None,
    images: Sequence[ImageRef] = (),
    parts: Optional[Sequence[PartPayload]] = None,
    history: Sequence[Message] = (),
    params: Optional[GenerationParams] = None,
    instructions: Optional[str] = None,
) -> Dict[str, Any]:
    """Build one request body from the current turn, prior turns and settings.

    Structured *parts* are kept in their given order; without them a single
    user turn is synthesized with the text first and then the images.
    The body never goes out empty: a greeting is substituted instead.
    """
    contents: List[Turn] = [turn for turn in (_message_turn(m) for m in history) if turn]

    unique_images = dedupe_images(images)
    if parts:
        seen: Set[Tuple[str, str]] = set()
        current = _structured_parts(parts, seen)
        # images passed alongside structured parts but not inside them
        extra = [i for i in unique_images if _image_key(i) not in seen]
        current += [p for p in (image_part(i) for i in extra) if p]
    else:
        current = [p for p in [_text_part(text)] if p]
        current += [p for p in (image_part(i) for i in unique_images) if p]

    if current:
        contents.append({"role": "user", "parts": current})
    if not contents:
        contents.append({"role": "user", "parts": [{"text": DEFAULT_GREETING}]})

    body: Dict[str, Any] = {"contents": contents, "generationConfig": generation_config(params)}
    if instructions and instructions.strip():
        body["systemInstruction"] = {"parts": [{"text": instructions.strip()}]}
    return body
