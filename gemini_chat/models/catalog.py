"""Models offered to the user, with their image capability."""

from typing import List, Optional

from pydantic import BaseModel

from .domain import DEFAULT_MODEL


class ModelOption(BaseModel):
    value: str
    label: str
    supports_images: bool
    description: str = ""


MODEL_OPTIONS: List[ModelOption] = [
    ModelOption(value="gemini-2.5-pro", label="Gemini 2.5 Pro", supports_images=True,
                description="Highest quality, multimodal"),
    ModelOption(value="gemini-2.5-flash", label="Gemini 2.5 Flash", supports_images=True,
                description="Fast answers, multimodal"),
    ModelOption(value="gemini-2.5-flash-image", label="Gemini 2.5 Flash Image", supports_images=True,
                description="Tuned for images"),
    ModelOption(value="gemini-2.5-flash-lite", label="Gemini 2.5 Flash Lite", supports_images=False,
                description="Lightweight, text only"),
    ModelOption(value="gemini-2.0-flash", label="Gemini 2.0 Flash", supports_images=True,
                description="Multimodal, fast generation"),
    ModelOption(value="imagen-3", label="Imagen 3", supports_images=True,
                description="Image generation (text to image)"),
]


def get_model_meta(model_id: Optional[str]) -> ModelOption:
    """Catalog entry for *model_id*, falling back to the default model."""
    for option in MODEL_OPTIONS:
        if option.value == model_id:
            return option
    for option in MODEL_OPTIONS:
        if option.value == DEFAULT_MODEL:
            return option
    return MODEL_OPTIONS[0]
