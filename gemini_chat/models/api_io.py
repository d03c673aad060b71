"""Request/response bodies of the HTTP surface.

``GenerateRequest`` is the single adapter for the body of ``POST /api/generate``:
every spelling older clients send (``top_p``/``topP``, ``imageBase64``,
``userPrompt``...) is mapped onto one canonical shape here, and nowhere else.
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .domain import GenerationParams, GenerationSettings, ImageRef, Message


class _Lenient(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ImagePayload(_Lenient):
    data: Optional[str] = Field(default=None, validation_alias=AliasChoices("data", "base64", "inline_data"))
    mime_type: str = Field(default="image/png", validation_alias=AliasChoices("mimeType", "mime_type"))
    url: Optional[str] = None
    name: Optional[str] = None
    size: Optional[int] = None

    def to_image_ref(self) -> ImageRef:
        return ImageRef(url=self.url, inline_data=self.data, mime_type=self.mime_type,
                        name=self.name, size_bytes=self.size)


class PartPayload(ImagePayload):
    type: Literal["text", "image"] = "text"
    text: Optional[str] = None


class HistoryEntry(_Lenient):
    role: str = "user"
    content: str = Field(default="", validation_alias=AliasChoices("content", "text"))
    images: List[ImagePayload] = Field(default_factory=list)
    image_base64: Optional[str] = Field(default=None, validation_alias=AliasChoices("imageBase64", "image_base64"))

    def image_refs(self) -> List[ImageRef]:
        refs = [image.to_image_ref() for image in self.images]
        if self.image_base64:
            refs.append(ImageRef(inline_data=self.image_base64, mime_type="image/png"))
        return refs


class GenerateRequest(_Lenient):
    model: Optional[str] = None
    prompt: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("userPrompt", "user_prompt", "prompt", "text")
    )
    image_base64: Optional[str] = Field(default=None, validation_alias=AliasChoices("imageBase64", "image_base64"))
    image_mime_type: str = Field(default="image/png", validation_alias=AliasChoices("imageMimeType", "image_mime_type"))
    images: List[ImagePayload] = Field(default_factory=list)
    parts: Optional[List[PartPayload]] = None
    messages: List[HistoryEntry] = Field(default_factory=list)
    temperature: Optional[float] = None
    top_p: Optional[float] = Field(default=None, validation_alias=AliasChoices("top_p", "topP"))
    max_output_tokens: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("max_output_tokens", "maxOutputTokens")
    )
    instructions: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("instructions", "customInstructions", "custom_instructions", "systemInstruction"),
    )

    def params(self) -> GenerationParams:
        return GenerationParams(
            temperature=self.temperature,
            top_p=self.top_p,
            max_output_tokens=self.max_output_tokens,
        )

    def all_images(self) -> List[ImageRef]:
        """Listed images, then the legacy single ``imageBase64`` field."""
        refs = [image.to_image_ref() for image in self.images]
        if self.image_base64 and self.image_base64.strip():
            refs.append(ImageRef(inline_data=self.image_base64.strip(), mime_type=self.image_mime_type))
        return refs

    def split_history(self) -> tuple[List[Message], Optional[str], Optional[HistoryEntry]]:
        """Prior turns, a system instruction found in them, and the trailing
        user entry when the body carries no explicit current turn."""
        system_text: Optional[str] = None
        entries = list(self.messages)
        for entry in [e for e in entries if e.role == "system"]:
            system_text = entry.content
            entries.remove(entry)

        current: Optional[HistoryEntry] = None
        has_turn = bool((self.prompt or "").strip() or self.all_images() or self.parts)
        if not has_turn and entries and entries[-1].role == "user":
            current = entries.pop()

        history = [
            Message(role="assistant" if e.role in ("assistant", "model") else "user",
                    content=e.content, images=e.image_refs())
            for e in entries
        ]
        return history, system_text, current


class GenerateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    reply: str
    model_used: str = Field(alias="modelUsed")
    fallback_applied: bool = Field(default=False, alias="fallbackApplied")


class ErrorResponse(BaseModel):
    error: str


class ConversationSummary(BaseModel):
    id: str
    title: str
    updated_at: int
    message_count: int = 0


class AttachmentState(BaseModel):
    id: str
    name: str
    status: str
    url: Optional[str] = None
    error: Optional[str] = None


class SendMessageResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    conversation_id: str
    title: str
    reply: Optional[str] = None
    model_used: Optional[str] = None
    fallback_applied: bool = False
    attachments: List[AttachmentState] = Field(default_factory=list)
    messages: List[Message] = Field(default_factory=list)


class PreferencesUpdate(_Lenient):
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0, validation_alias=AliasChoices("top_p", "topP"))
    instructions: Optional[str] = None

    def apply(self, current: GenerationSettings) -> GenerationSettings:
        return current.model_copy(update=self.model_dump(exclude_none=True))


class StatusResponse(BaseModel):
    message: Optional[str] = None
