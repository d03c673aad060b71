from fastapi import APIRouter, Depends, status

from ...models.api_io import PreferencesUpdate, StatusResponse
from ...models.domain import GenerationSettings
from ...services.chat import ChatService
from ..auth import get_current_user
from ..deps import get_chat_service

router = APIRouter(tags=["preferences"])


@router.get("/preferences", response_model=GenerationSettings)
async def get_preferences(
    user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Stored generation settings merged over the defaults."""
    return await service.get_preferences(user["user_id"])


@router.put("/preferences", response_model=GenerationSettings)
async def update_preferences(
    body: PreferencesUpdate,
    user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Apply a partial update; the write itself is debounced."""
    current = await service.get_preferences(user["user_id"])
    updated = GenerationSettings.model_validate(body.apply(current).model_dump())
    return service.update_preferences(user["user_id"], updated)


@router.get("/status", response_model=StatusResponse)
async def get_status(
    user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return StatusResponse(message=service.banner.get(user["user_id"]))


@router.delete("/status", status_code=status.HTTP_204_NO_CONTENT)
async def dismiss_status(
    user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    service.banner.clear(user["user_id"])
