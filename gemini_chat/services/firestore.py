"""Firestore persistence for conversations and user preferences.

Layout::

    chats/{chatId}   {userId, title, messages: [...], createdAt, updatedAt}
    users/{uid}      {preferences: {model, temperature, topP, instructions}}

Every write is a merge-write; inline image payloads never reach Firestore.
"""

from __future__ import annotations

import datetime as _dt
import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional

import anyio
from google.api_core import exceptions as gexc
from google.auth.exceptions import GoogleAuthError
from google.cloud import firestore
from google.cloud.firestore import SERVER_TIMESTAMP

from ..errors import ConversationNotFound
from ..models.domain import (
    DEFAULT_CHAT_TITLE,
    Conversation,
    GenerationSettings,
    ImageRef,
    Message,
    now_millis,
)

logger = logging.getLogger(__name__)

CHATS_COLLECTION = "chats"
USERS_COLLECTION = "users"
DIAGNOSTICS_COLLECTION = "_diagnostics"


# --------------------------------------------------------------------------- #
# Serialization
# --------------------------------------------------------------------------- #
def serialize_image(image: ImageRef) -> Optional[Dict[str, Any]]:
    if not image.url:
        return None
    data: Dict[str, Any] = {"url": image.url, "mimeType": image.mime_type}
    if image.name:
        data["name"] = image.name
    if image.size_bytes:
        data["size"] = image.size_bytes
    return data


def serialize_message(message: Message) -> Dict[str, Any]:
    """Storage form of a message: durable image URLs only, never inline data."""
    images = [d for d in (serialize_image(i) for i in message.images) if d]
    return {
        "role": message.role,
        "content": message.content,
        "timestamp": message.timestamp,
        "images": images,
    }


def deserialize_message(data: Dict[str, Any]) -> Message:
    images = []
    for raw in data.get("images") or []:
        if not isinstance(raw, dict) or not raw.get("url"):
            continue
        images.append(
            ImageRef(
                url=raw["url"],
                mime_type=raw.get("mimeType") or raw.get("mime_type") or "image/png",
                name=raw.get("name"),
                size_bytes=raw.get("size"),
            )
        )
    return Message(
        role="assistant" if data.get("role") == "assistant" else "user",
        content=data.get("content") or "",
        images=images,
        timestamp=data.get("timestamp") or now_millis(),
    )


def _to_millis(value: Any) -> int:
    if isinstance(value, _dt.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=_dt.timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        return int(value)
    return now_millis()


def conversation_from_snapshot(snapshot: Any) -> Conversation:
    data = snapshot.to_dict() or {}
    return Conversation(
        id=snapshot.id,
        owner_id=data.get("userId", ""),
        title=data.get("title") or DEFAULT_CHAT_TITLE,
        messages=[deserialize_message(m) for m in data.get("messages") or [] if isinstance(m, dict)],
        updated_at=_to_millis(data.get("updatedAt")),
    )


def derive_title(text: Optional[str], max_length: int = 60) -> str:
    return (text or "").strip()[:max_length] or DEFAULT_CHAT_TITLE


# --------------------------------------------------------------------------- #
# Repositories
# --------------------------------------------------------------------------- #
class ConversationRepository:
    """Chat documents in the ``chats`` collection."""

    def __init__(self, db: firestore.Client):
        self.db = db
        self._chats = db.collection(CHATS_COLLECTION)

    def create(self, owner_id: str, title: str = DEFAULT_CHAT_TITLE) -> Conversation:
        ref = self._chats.document()
        ref.set(
            {
                "userId": owner_id,
                "title": title,
                "messages": [],
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            }
        )
        logger.info("Created chat %s for %s", ref.id, owner_id)
        return Conversation(id=ref.id, owner_id=owner_id, title=title)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        snapshot = self._chats.document(conversation_id).get()
        if not snapshot.exists:
            return None
        return conversation_from_snapshot(snapshot)

    def _owner_query(self, owner_id: str):
        return self._chats.where(filter=firestore.FieldFilter("userId", "==", owner_id)).order_by(
            "updatedAt", direction=firestore.Query.DESCENDING
        )

    def list_for_owner(self, owner_id: str) -> List[Conversation]:
        return [conversation_from_snapshot(doc) for doc in self._owner_query(owner_id).stream()]

    def append_message(self, conversation: Conversation, message: Message) -> None:
        """Merge-write one more message; stored messages are never rewritten."""
        self._chats.document(conversation.id).set(
            {
                "userId": conversation.owner_id,
                "title": conversation.title,
                "messages": firestore.ArrayUnion([serialize_message(message)]),
                "updatedAt": SERVER_TIMESTAMP,
            },
            merge=True,
        )

    def subscribe(
        self, owner_id: str, callback: Callable[[List[Conversation]], None]
    ) -> Callable[[], None]:
        """Deliver the owner's full conversation list on every change."""

        def _on_snapshot(docs, changes, read_time) -> None:
            callback([conversation_from_snapshot(doc) for doc in docs])

        watch = self._owner_query(owner_id).on_snapshot(_on_snapshot)
        return watch.unsubscribe


class PreferencesRepository:
    """``users/{uid}.preferences`` with a debounced merge-save."""

    def __init__(self, db: firestore.Client, debounce_seconds: float = 0.5):
        self.db = db
        self.debounce_seconds = debounce_seconds
        self._timers: Dict[str, threading.Timer] = {}
        self._pending: Dict[str, GenerationSettings] = {}
        self._lock = threading.Lock()

    def _doc(self, uid: str):
        return self.db.collection(USERS_COLLECTION).document(uid)

    def load(self, uid: str) -> GenerationSettings:
        """Stored preferences over the defaults; defaults when unreadable."""
        with self._lock:
            if uid in self._pending:
                return self._pending[uid]
        try:
            snapshot = self._doc(uid).get()
        except (gexc.GoogleAPICallError, GoogleAuthError) as exc:
            logger.error("Could not load preferences for %s: %s", uid, exc)
            return GenerationSettings()
        if not snapshot.exists:
            return GenerationSettings()
        return GenerationSettings.from_document((snapshot.to_dict() or {}).get("preferences"))

    def save(self, uid: str, settings: GenerationSettings) -> None:
        self._doc(uid).set({"preferences": settings.to_document()}, merge=True)

    def save_debounced(self, uid: str, settings: GenerationSettings) -> None:
        """Schedule a save; a newer call within the window replaces it."""
        with self._lock:
            timer = self._timers.pop(uid, None)
            if timer is not None:
                timer.cancel()
            self._pending[uid] = settings
            timer = threading.Timer(self.debounce_seconds, self._flush_one, args=(uid,))
            timer.daemon = True
            self._timers[uid] = timer
            timer.start()

    def flush(self) -> None:
        """Write every pending save now."""
        with self._lock:
            uids = list(self._pending)
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
        for uid in uids:
            self._flush_one(uid)

    def _flush_one(self, uid: str) -> None:
        with self._lock:
            settings = self._pending.pop(uid, None)
            self._timers.pop(uid, None)
        if settings is None:
            return
        try:
            self.save(uid, settings)
        except (gexc.GoogleAPICallError, GoogleAuthError) as exc:
            logger.error("Could not save preferences for %s: %s", uid, exc)


# --------------------------------------------------------------------------- #
# Reconciler
# --------------------------------------------------------------------------- #
class ConversationReconciler:
    """Local conversation state mirrored optimistically, persisted afterwards.

    Listeners see every change immediately, inline previews included; Firestore
    sees it once the merge-write completes, after which the local copy holds
    the stored (URL-only) form. Server snapshots replace the local copies
    unless they are behind them.
    """

    def __init__(self, repo: ConversationRepository, title_length: int = 60, max_conversations: int = 1000):
        self.repo = repo
        self.title_length = title_length
        self.max_conversations = max_conversations
        self._conversations: "OrderedDict[str, Conversation]" = OrderedDict()
        self._listeners: List[Callable[[Conversation], None]] = []

    def _remember(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation
        self._conversations.move_to_end(conversation.id)
        while len(self._conversations) > self.max_conversations:
            self._conversations.popitem(last=False)

    def add_listener(self, listener: Callable[[Conversation], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self, conversation: Conversation) -> None:
        for listener in list(self._listeners):
            listener(conversation)

    def local(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def conversations_for(self, owner_id: str) -> List[Conversation]:
        owned = [c for c in self._conversations.values() if c.owner_id == owner_id]
        return sorted(owned, key=lambda c: c.updated_at, reverse=True)

    def apply_snapshot(self, owner_id: str, conversations: Iterable[Conversation]) -> None:
        """Replace the owner's local conversations with the server list.

        A server copy holding fewer messages than the local one predates a
        local append that is still in flight, so the local copy is kept.
        """
        incoming = {c.id: c for c in conversations}
        for conversation_id in [cid for cid, c in self._conversations.items() if c.owner_id == owner_id]:
            if conversation_id not in incoming:
                del self._conversations[conversation_id]
        for conversation in incoming.values():
            current = self._conversations.get(conversation.id)
            if current is not None and len(current.messages) > len(conversation.messages):
                logger.debug("Keeping local copy of %s over an older snapshot", conversation.id)
                continue
            self._remember(conversation)
            self._notify(conversation)

    async def load(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            conversation = await anyio.to_thread.run_sync(self.repo.get, conversation_id)
            if conversation is not None:
                self._remember(conversation)
        return conversation

    async def ensure_conversation(
        self, owner_id: str, conversation_id: Optional[str], first_text: Optional[str] = None
    ) -> Conversation:
        if conversation_id:
            conversation = await self.load(conversation_id)
            # another user's chat is reported as missing
            if conversation is None or conversation.owner_id != owner_id:
                raise ConversationNotFound(conversation_id)
            return conversation

        title = derive_title(first_text, self.title_length)
        conversation = await anyio.to_thread.run_sync(self.repo.create, owner_id, title)
        self._remember(conversation)
        self._notify(conversation)
        return conversation

    async def append(self, conversation_id: str, message: Message) -> Conversation:
        """Append locally and notify, persist the message, then keep its stored form."""
        current = self._conversations[conversation_id]
        title = current.title
        if message.role == "user" and title == DEFAULT_CHAT_TITLE and message.content.strip():
            title = derive_title(message.content, self.title_length)

        updated = current.model_copy(
            update={
                "messages": [*current.messages, message],
                "title": title,
                "updated_at": now_millis(),
            }
        )
        self._remember(updated)
        self._notify(updated)

        await anyio.to_thread.run_sync(self.repo.append_message, updated, message)

        # a snapshot may have replaced the local copy while the write was in flight
        latest = self._conversations.get(conversation_id, updated)
        stored = deserialize_message(serialize_message(message))
        messages = [stored if m is message else m for m in latest.messages]
        persisted = latest.model_copy(update={"messages": messages})
        self._remember(persisted)
        return persisted


# --------------------------------------------------------------------------- #
# Diagnostics
# --------------------------------------------------------------------------- #
def check_firestore_connection(db: firestore.Client) -> Dict[str, Any]:
    """Read one document and merge-write another to prove connectivity."""
    status: Dict[str, Any] = {
        "connected": False,
        "projectId": getattr(db, "project", None),
        "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(),
        "error": None,
    }
    try:
        db.collection(DIAGNOSTICS_COLLECTION).document("connection-test").get()
        db.collection(DIAGNOSTICS_COLLECTION).document("connection-test-write").set(
            {"timestamp": status["timestamp"], "test": True}, merge=True
        )
        status["connected"] = True
        logger.info("Firestore connection check succeeded for %s", status["projectId"])
    except (gexc.GoogleAPICallError, gexc.RetryError, GoogleAuthError) as exc:
        status["error"] = {
            "code": getattr(exc, "code", None) and str(exc.code),
            "message": str(exc),
            "name": exc.__class__.__name__,
        }
        logger.error("Firestore connection check failed: %s", exc)
    return status
