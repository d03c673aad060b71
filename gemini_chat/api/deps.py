import logging
from functools import lru_cache
from typing import Optional

from google.cloud import firestore, storage

from ..config import get_settings
from ..services.chat import ChatService, StatusBanner
from ..services.firestore import (
    ConversationReconciler,
    ConversationRepository,
    PreferencesRepository,
)
from ..services.gemini import ModelInvoker, build_transport
from ..services.storage import AttachmentUploader, ReachabilityProbe
from ..services.transcoder import ImageTranscoder

settings = get_settings()  # Get settings at module level


# --- Google clients ---

@lru_cache()
def get_firestore_client() -> firestore.Client:
    """Provides the Firestore client."""
    logging.info("Initializing Firestore client...")
    return firestore.Client(project=settings.project_id, database=settings.firestore_database)


@lru_cache()
def get_storage_client() -> storage.Client:
    """Provides the Cloud Storage client."""
    logging.info("Initializing Cloud Storage client...")
    return storage.Client(project=settings.project_id)


# --- Gemini ---

@lru_cache()
def get_invoker() -> ModelInvoker:
    """Provides a ModelInvoker on the configured transport."""
    logging.info("Initializing ModelInvoker...")
    return ModelInvoker(build_transport(settings), default_model=settings.default_model)


# --- Attachments ---

@lru_cache()
def get_transcoder() -> ImageTranscoder:
    return ImageTranscoder(max_inline_bytes=settings.max_image_inline_bytes)


@lru_cache()
def get_uploader() -> Optional[AttachmentUploader]:
    """Provides an AttachmentUploader, or None when no bucket is configured."""
    buckets = settings.storage_buckets
    if not buckets:
        logging.info("No storage bucket configured, attachments stay inline")
        return None
    origins = settings.cors_origins_list
    probe = ReachabilityProbe(
        settings.storage_endpoint,
        origin=origins[0] if origins else "http://localhost",
        ttl=settings.probe_ttl_seconds,
        timeout=settings.probe_timeout,
    )
    return AttachmentUploader(
        get_storage_client(),
        buckets,
        probe=probe,
        max_attempts=settings.upload_max_attempts,
        retry_delay=settings.upload_retry_delay,
    )


# --- Conversations & preferences ---

@lru_cache()
def get_reconciler() -> ConversationReconciler:
    return ConversationReconciler(
        ConversationRepository(get_firestore_client()),
        title_length=settings.max_chat_title_length,
    )


@lru_cache()
def get_preferences_repo() -> PreferencesRepository:
    return PreferencesRepository(
        get_firestore_client(), debounce_seconds=settings.preferences_debounce_seconds
    )


@lru_cache()
def get_banner() -> StatusBanner:
    return StatusBanner(timeout=settings.banner_timeout_seconds)


@lru_cache()
def get_chat_service() -> ChatService:
    """Provides the ChatService wired to every collaborator above."""
    logging.info("Initializing ChatService...")
    return ChatService(
        invoker=get_invoker(),
        reconciler=get_reconciler(),
        preferences=get_preferences_repo(),
        transcoder=get_transcoder(),
        uploader=get_uploader(),
        banner=get_banner(),
        max_message_inline_bytes=settings.max_message_inline_bytes,
    )
