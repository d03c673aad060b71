"""Pydantic data models shared across the application."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Iterable, Iterator, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_CHAT_TITLE = "New chat"


def now_millis() -> int:
    return int(time.time() * 1000)


class UploadStatus(str, Enum):
    READY = "ready"
    UPLOADING = "uploading"
    RETRYING = "retrying"
    SUCCESS = "success"
    ERROR = "error"


class Attachment(BaseModel):
    """An image selected for the next outgoing message."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    content: Optional[bytes] = Field(default=None, exclude=True)  # original file
    file_mime_type: Optional[str] = None  # content type of the original file
    name: str = ""
    mime_type: str = "image/png"
    size_bytes: int = 0
    inline_data: Optional[str] = Field(default=None, exclude=True)
    preview_url: Optional[str] = Field(default=None, exclude=True)
    upload_status: UploadStatus = UploadStatus.READY
    uploaded_url: Optional[str] = None
    bucket: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def signature(self) -> Tuple[str, Optional[str]]:
        return (self.mime_type or "image/png", self.inline_data)

    @property
    def has_file(self) -> bool:
        return self.content is not None

    def mark(self, status: UploadStatus, url: Optional[str] = None, error: Optional[str] = None) -> None:
        self.upload_status = status
        if url:
            self.uploaded_url = url
        self.last_error = error

    def release(self) -> None:
        """Drop the local preview reference and the raw file bytes."""
        self.preview_url = None
        self.content = None

    def to_image_ref(self) -> "ImageRef":
        return ImageRef(
            url=self.uploaded_url,
            inline_data=self.inline_data,
            mime_type=self.mime_type,
            name=self.name,
            size_bytes=self.size_bytes or None,
        )


class AttachmentSet:
    """Ordered attachments, unique on ``(mime_type, inline_data)``."""

    def __init__(self, attachments: Iterable[Attachment] = ()):
        self._items: List[Attachment] = []
        for attachment in attachments:
            self.add(attachment)

    def add(self, attachment: Attachment) -> bool:
        """Append unless an attachment with the same signature exists."""
        if attachment.inline_data and any(a.signature == attachment.signature for a in self._items):
            attachment.release()
            return False
        self._items.append(attachment)
        return True

    def remove(self, attachment_id: str) -> Optional[Attachment]:
        for index, attachment in enumerate(self._items):
            if attachment.id == attachment_id:
                attachment.release()
                return self._items.pop(index)
        return None

    def get(self, attachment_id: str) -> Optional[Attachment]:
        return next((a for a in self._items if a.id == attachment_id), None)

    def clear(self) -> None:
        for attachment in self._items:
            attachment.release()
        self._items = []

    def __iter__(self) -> Iterator[Attachment]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)


class ImageRef(BaseModel):
    url: Optional[str] = None
    inline_data: Optional[str] = None
    mime_type: str = "image/png"
    name: Optional[str] = None
    size_bytes: Optional[int] = None


class Message(BaseModel):
    role: Literal["user", "assistant"]
    content: str = ""
    images: List[ImageRef] = Field(default_factory=list)
    timestamp: int = Field(default_factory=now_millis)


class Conversation(BaseModel):
    id: str
    owner_id: str
    title: str = DEFAULT_CHAT_TITLE
    messages: List[Message] = Field(default_factory=list)
    updated_at: int = Field(default_factory=now_millis)


class GenerationSettings(BaseModel):
    """Per-user generation preferences."""

    model: str = DEFAULT_MODEL
    temperature: float = Field(default=0.8, ge=0.0, le=1.0)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)
    instructions: str = ""

    def to_document(self) -> dict:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "topP": self.top_p,
            "instructions": self.instructions,
        }

    @classmethod
    def from_document(cls, data: Optional[dict]) -> "GenerationSettings":
        data = data or {}
        defaults = cls()
        return cls(
            model=data.get("model") or defaults.model,
            temperature=data.get("temperature", defaults.temperature),
            top_p=data.get("topP", data.get("top_p", defaults.top_p)),
            instructions=data.get("instructions") or "",
        )


class GenerationParams(BaseModel):
    """Canonical sampling parameters; ``None`` means "use the default"."""

    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_output_tokens: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: GenerationSettings, max_output_tokens: Optional[int] = None) -> "GenerationParams":
        return cls(
            temperature=settings.temperature,
            top_p=settings.top_p,
            max_output_tokens=max_output_tokens,
        )
