import logging

from fastapi import APIRouter, Depends

from ...config import Settings, get_settings
from ...models.api_io import ErrorResponse, GenerateRequest, GenerateResponse
from ...services.gemini import ModelInvoker
from ...services.payload import build_request_body, check_inline_budget, dedupe_images
from ..deps import get_invoker

router = APIRouter(prefix="/api", tags=["generate"])


@router.post(
    "/generate",
    response_model=GenerateResponse,
    responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def generate(
    body: GenerateRequest,
    invoker: ModelInvoker = Depends(get_invoker),
    settings: Settings = Depends(get_settings),
):
    """Single-shot generation: one request body in, one reply out.

    Older clients put the current turn as the last entry of ``messages``;
    in that case it is lifted out and treated as the prompt.
    """
    history, system_text, current = body.split_history()
    text = body.prompt
    images = body.all_images()
    if current is not None:
        text = current.content
        images = current.image_refs() + images

    part_images = [p.to_image_ref() for p in body.parts or [] if p.type == "image"]
    history_images = [image for message in history for image in message.images]
    check_inline_budget(
        dedupe_images(part_images + images) + history_images, settings.max_message_inline_bytes
    )

    payload = build_request_body(
        text=text,
        images=images,
        parts=body.parts,
        history=history,
        params=body.params(),
        instructions=body.instructions or system_text,
    )
    logging.debug(f"Generating with {body.model or invoker.default_model}: {len(payload['contents'])} turn(s)")

    result = await invoker.invoke(body.model, payload)
    return GenerateResponse(
        reply=result.text,
        modelUsed=result.model_used,
        fallbackApplied=result.fallback_applied,
    )
