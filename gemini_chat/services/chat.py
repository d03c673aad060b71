"""Chat service: the send pipeline plus the per-user status banner.

One send runs: ownership check → transcode → inline budget check → upload →
persist the user message → build the request → invoke (with fallback) →
persist the reply.
The user message is durable before the model is called; the reply is
written only after a successful call.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import anyio

from ..errors import ChatBackendError, ConversationBusy, InvalidRequest, describe_failure
from ..models.catalog import get_model_meta
from ..models.domain import (
    Attachment,
    AttachmentSet,
    Conversation,
    GenerationParams,
    GenerationSettings,
    Message,
)
from .firestore import ConversationReconciler, PreferencesRepository
from .gemini import ModelInvoker
from .payload import MAX_MESSAGE_INLINE_BYTES, build_request_body, check_inline_budget
from .storage import AttachmentUploader, StatusCallback
from .transcoder import ImageTranscoder, normalize_mime_type

logger = logging.getLogger(__name__)


@dataclass
class IncomingFile:
    content: bytes
    name: str = ""
    mime_type: str = "image/png"


class StatusBanner:
    """Latest human-readable failure per user, cleared after ``timeout`` seconds."""

    def __init__(self, timeout: float = 8.0, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self._clock = clock
        self._messages: Dict[str, Tuple[str, float]] = {}

    def set(self, owner_id: str, message: str) -> None:
        self._messages[owner_id] = (message, self._clock())

    def get(self, owner_id: str) -> Optional[str]:
        entry = self._messages.get(owner_id)
        if entry is None:
            return None
        message, set_at = entry
        if self._clock() - set_at >= self.timeout:
            del self._messages[owner_id]
            return None
        return message

    def clear(self, owner_id: str) -> None:
        self._messages.pop(owner_id, None)


@dataclass
class SendOutcome:
    conversation: Conversation
    reply: str
    model_used: str
    fallback_applied: bool = False
    attachments: List[Attachment] = field(default_factory=list)


def _payload_history(messages: Sequence[Message]) -> List[Message]:
    """Prior turns as sent to the model: text only.

    Stored images are download URLs the model cannot fetch, so earlier
    images are not replayed; only the current turn carries inline data.
    """
    return [m.model_copy(update={"images": []}) for m in messages]


class ChatService:
    def __init__(
        self,
        invoker: ModelInvoker,
        reconciler: ConversationReconciler,
        preferences: PreferencesRepository,
        transcoder: ImageTranscoder,
        uploader: Optional[AttachmentUploader] = None,
        banner: Optional[StatusBanner] = None,
        max_message_inline_bytes: int = MAX_MESSAGE_INLINE_BYTES,
        max_output_tokens: Optional[int] = None,
    ):
        self.invoker = invoker
        self.reconciler = reconciler
        self.preferences = preferences
        self.transcoder = transcoder
        self.uploader = uploader
        self.banner = banner or StatusBanner()
        self.max_message_inline_bytes = max_message_inline_bytes
        self.max_output_tokens = max_output_tokens
        self._busy: Set[str] = set()

    # ─────────────────────────── Read helpers ───────────────────────────
    async def list_conversations(self, owner_id: str) -> List[Conversation]:
        conversations = await anyio.to_thread.run_sync(self.reconciler.repo.list_for_owner, owner_id)
        self.reconciler.apply_snapshot(owner_id, conversations)
        return self.reconciler.conversations_for(owner_id)

    async def get_conversation(self, owner_id: str, conversation_id: str) -> Conversation:
        return await self.reconciler.ensure_conversation(owner_id, conversation_id)

    async def get_preferences(self, owner_id: str) -> GenerationSettings:
        return await anyio.to_thread.run_sync(self.preferences.load, owner_id)

    def update_preferences(self, owner_id: str, settings: GenerationSettings) -> GenerationSettings:
        self.preferences.save_debounced(owner_id, settings)
        return settings

    def is_busy(self, owner_id: str) -> bool:
        return owner_id in self._busy

    # ─────────────────────────── Send pipeline ───────────────────────────
    async def send_message(
        self,
        owner_id: str,
        text: Optional[str],
        files: Sequence[IncomingFile] = (),
        conversation_id: Optional[str] = None,
        model: Optional[str] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> SendOutcome:
        """Run one send for *owner_id*; a second concurrent send is rejected."""
        if owner_id in self._busy:
            raise ConversationBusy("A message is already being sent. Wait for the reply.")
        self._busy.add(owner_id)
        self.banner.clear(owner_id)
        try:
            return await self._send(owner_id, text, files, conversation_id, model, on_status)
        except ChatBackendError as exc:
            self.banner.set(owner_id, describe_failure(exc))
            raise
        finally:
            self._busy.discard(owner_id)

    async def _send(
        self,
        owner_id: str,
        text: Optional[str],
        files: Sequence[IncomingFile],
        conversation_id: Optional[str],
        model: Optional[str],
        on_status: Optional[StatusCallback],
    ) -> SendOutcome:
        text = (text or "").strip()
        if not text and not files:
            raise InvalidRequest("Type a message or attach an image.")
        for incoming in files:
            if not (incoming.mime_type or "").lower().startswith("image/"):
                raise InvalidRequest(f"{incoming.name or 'Attachment'} is not an image.")

        # an existing chat must belong to the caller before anything is uploaded
        conversation: Optional[Conversation] = None
        if conversation_id:
            conversation = await self.reconciler.ensure_conversation(owner_id, conversation_id)

        settings = await self.get_preferences(owner_id)
        model = (model or settings.model or "").strip() or self.invoker.default_model
        meta = get_model_meta(model)
        if files and not meta.supports_images:
            raise InvalidRequest(f"{meta.label} does not accept images. Pick another model.")

        attachments = await self._prepare(files)
        try:
            images = [a.to_image_ref() for a in attachments]
            history = _payload_history(conversation.messages if conversation else [])
            check_inline_budget(
                images + [i for m in history for i in m.images], self.max_message_inline_bytes
            )

            if self.uploader is not None and len(attachments):
                await anyio.to_thread.run_sync(
                    self.uploader.upload, list(attachments), owner_id, on_status
                )
                images = [a.to_image_ref() for a in attachments]

            # re-read so turns appended while the upload ran are included
            conversation = await self.reconciler.ensure_conversation(
                owner_id, conversation.id if conversation else None, text
            )
            history = _payload_history(conversation.messages)
            await self.reconciler.append(
                conversation.id, Message(role="user", content=text, images=images)
            )

            body = build_request_body(
                text=text,
                images=images,
                history=history,
                params=GenerationParams.from_settings(settings, self.max_output_tokens),
                instructions=settings.instructions,
            )
            result = await self.invoker.invoke(model, body)

            if result.fallback_applied:
                logger.warning("Model %s unavailable for %s, now using %s", model, owner_id, result.model_used)
                self.preferences.save_debounced(
                    owner_id, settings.model_copy(update={"model": result.model_used})
                )
                self.banner.set(
                    owner_id, f"Model {model} is unavailable. Switched to {result.model_used}."
                )

            conversation = await self.reconciler.append(
                conversation.id, Message(role="assistant", content=result.text)
            )
            return SendOutcome(
                conversation=conversation,
                reply=result.text,
                model_used=result.model_used,
                fallback_applied=result.fallback_applied,
                attachments=list(attachments),
            )
        finally:
            for attachment in attachments:
                attachment.release()

    async def _prepare(self, files: Sequence[IncomingFile]) -> AttachmentSet:
        attachments = AttachmentSet()
        for incoming in files:
            file_mime = normalize_mime_type(incoming.mime_type)
            inline = await anyio.to_thread.run_sync(self.transcoder.transcode, incoming.content, file_mime)
            added = attachments.add(
                Attachment(
                    content=incoming.content,
                    name=incoming.name,
                    file_mime_type=file_mime,
                    mime_type=inline.mime_type,
                    size_bytes=len(incoming.content),
                    inline_data=inline.data,
                )
            )
            if not added:
                logger.info("Skipping duplicate attachment %s", incoming.name)
        return attachments
