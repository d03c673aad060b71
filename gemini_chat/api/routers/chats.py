import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Path, UploadFile, status

from ...models.api_io import AttachmentState, ConversationSummary, SendMessageResponse
from ...models.domain import Conversation
from ...services.chat import ChatService, IncomingFile
from ..auth import get_current_user
from ..deps import get_chat_service

router = APIRouter(prefix="/chats", tags=["chats"])


@router.get("", response_model=List[ConversationSummary])
async def get_chat_list(
    user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Chats of the signed-in user, most recently updated first."""
    conversations = await service.list_conversations(user["user_id"])
    return [
        ConversationSummary(
            id=c.id, title=c.title, updated_at=c.updated_at, message_count=len(c.messages)
        )
        for c in conversations
    ]


@router.get("/{chat_id}", response_model=Conversation)
async def get_chat(
    chat_id: str = Path(..., title="The ID of the chat session"),
    user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.get_conversation(user["user_id"], chat_id)


@router.post("", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    text: Optional[str] = Form(None),
    model: Optional[str] = Form(None),
    chat_id: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """
    Sends a message (text and/or images) to a new or existing chat, stores
    both turns and returns the reply with the final attachment states.
    """
    incoming = []
    for upload in files or []:
        incoming.append(
            IncomingFile(
                content=await upload.read(),
                name=upload.filename or "",
                mime_type=upload.content_type or "image/png",
            )
        )

    def _on_status(attachment_id: str, state: str, metadata: dict) -> None:
        logging.debug(f"Attachment {attachment_id} -> {state} {metadata}")

    outcome = await service.send_message(
        user["user_id"],
        text,
        files=incoming,
        conversation_id=chat_id,
        model=model,
        on_status=_on_status,
    )
    return SendMessageResponse(
        conversation_id=outcome.conversation.id,
        title=outcome.conversation.title,
        reply=outcome.reply,
        model_used=outcome.model_used,
        fallback_applied=outcome.fallback_applied,
        attachments=[
            AttachmentState(
                id=a.id,
                name=a.name,
                status=a.upload_status.value,
                url=a.uploaded_url,
                error=a.last_error,
            )
            for a in outcome.attachments
        ],
        messages=outcome.conversation.messages,
    )
