import asyncio
from unittest.mock import MagicMock

import pytest
from conftest import ScriptedTransport, noise_image_bytes, solid_image_bytes
from google.api_core import exceptions as gexc

from gemini_chat.errors import (
    ConversationBusy,
    ConversationNotFound,
    InvalidRequest,
    PayloadTooLarge,
    StorageTransientError,
    UpstreamError,
)
from gemini_chat.services.chat import ChatService, IncomingFile, StatusBanner
from gemini_chat.services.firestore import (
    ConversationReconciler,
    ConversationRepository,
    PreferencesRepository,
)
from gemini_chat.services.gemini import ModelInvoker
from gemini_chat.services.storage import AttachmentUploader
from gemini_chat.services.transcoder import MAX_IMAGE_INLINE_BYTES, ImageTranscoder

DEFAULT = "gemini-2.5-flash"


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _service(fake_db, script, uploader=None, **kwargs):
    transport = ScriptedTransport(script)
    preferences = PreferencesRepository(fake_db, debounce_seconds=60)
    service = ChatService(
        invoker=ModelInvoker(transport, DEFAULT),
        reconciler=ConversationReconciler(ConversationRepository(fake_db)),
        preferences=preferences,
        transcoder=ImageTranscoder(),
        uploader=uploader,
        **kwargs,
    )
    return service, transport, preferences


def _stored(fake_db, conversation_id):
    return fake_db.collection("chats").store[conversation_id]


def test_text_message_round_trip(fake_db):
    service, transport, _ = _service(fake_db, {DEFAULT: "Hi! How can I help?"})

    outcome = asyncio.run(service.send_message("alice", "Hello"))

    [(model, body)] = transport.calls
    assert model == DEFAULT
    assert body["contents"] == [{"role": "user", "parts": [{"text": "Hello"}]}]
    assert (outcome.reply, outcome.model_used, outcome.fallback_applied) == ("Hi! How can I help?", DEFAULT, False)

    stored = _stored(fake_db, outcome.conversation.id)
    assert [(m["role"], m["content"], m["images"]) for m in stored["messages"]] == [
        ("user", "Hello", []),
        ("assistant", "Hi! How can I help?", []),
    ]
    assert stored["title"] == "Hello"


def test_large_png_without_text(fake_db):
    client = MagicMock()
    uploader = AttachmentUploader(client, ["primary"], sleep=lambda _: None)
    service, transport, _ = _service(fake_db, {DEFAULT: "A field of static."}, uploader=uploader)
    content = noise_image_bytes(1400, 1200)  # ~5 MB PNG
    statuses = []

    outcome = asyncio.run(
        service.send_message(
            "alice", "", files=[IncomingFile(content, "static.png", "image/png")],
            on_status=lambda a, s, m: statuses.append(s),
        )
    )

    [(_, body)] = transport.calls
    [turn] = body["contents"]
    [part] = turn["parts"]
    assert "text" not in part
    inline = part["inline_data"]
    assert (len(inline["data"].rstrip("=")) * 3) // 4 <= MAX_IMAGE_INLINE_BYTES

    # the original file went to storage with its own content type
    client.bucket.return_value.blob.return_value.upload_from_string.assert_called_once()
    assert client.bucket.return_value.blob.return_value.upload_from_string.call_args.kwargs[
        "content_type"
    ] == "image/png"
    assert statuses == ["uploading", "success"]
    [attachment] = outcome.attachments
    assert attachment.upload_status.value == "success"
    assert attachment.content is None  # released after the send

    [user_message, _] = _stored(fake_db, outcome.conversation.id)["messages"]
    [image] = user_message["images"]
    assert image["url"] == attachment.uploaded_url
    assert "data" not in image
    assert user_message["content"] == ""


def test_duplicate_files_are_sent_once(fake_db):
    service, transport, _ = _service(fake_db, {DEFAULT: "ok"})
    png = solid_image_bytes()

    outcome = asyncio.run(
        service.send_message(
            "alice", "Same?", files=[IncomingFile(png, "a.png", "image/png"), IncomingFile(png, "b.png", "image/png")]
        )
    )

    parts = transport.calls[0][1]["contents"][-1]["parts"]
    assert len([p for p in parts if "inline_data" in p]) == 1
    assert len(outcome.attachments) == 1


def test_follow_up_carries_history(fake_db):
    service, transport, _ = _service(fake_db, {DEFAULT: "reply"})

    first = asyncio.run(service.send_message("alice", "First question"))
    asyncio.run(service.send_message("alice", "Second question", conversation_id=first.conversation.id))

    body = transport.calls[1][1]
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert len(_stored(fake_db, first.conversation.id)["messages"]) == 4


def test_fallback_switches_preference_and_sets_banner(fake_db):
    fake_db.collection("users").document("alice").set({"preferences": {"model": "gemini-retired"}})
    service, transport, preferences = _service(fake_db, {DEFAULT: "fallback reply"})

    outcome = asyncio.run(service.send_message("alice", "Hi"))

    assert outcome.fallback_applied
    assert outcome.model_used == DEFAULT
    assert preferences.load("alice").model == DEFAULT
    assert "gemini-retired" in service.banner.get("alice")


def test_user_message_survives_failed_generation(fake_db):
    service, _, _ = _service(fake_db, {DEFAULT: UpstreamError(429, "Resource exhausted")})

    with pytest.raises(UpstreamError):
        asyncio.run(service.send_message("alice", "Hello?"))

    [conversation] = ConversationRepository(fake_db).list_for_owner("alice")
    assert [m.role for m in conversation.messages] == ["user"]
    assert service.banner.get("alice") == "Too many requests. Wait a few seconds."
    assert not service.is_busy("alice")


def test_upload_failure_stops_before_persisting(fake_db):
    client = MagicMock()
    client.bucket.return_value.blob.return_value.upload_from_string.side_effect = gexc.Unauthorized("cors")
    uploader = AttachmentUploader(client, ["primary", "backup"], sleep=lambda _: None)
    service, transport, _ = _service(fake_db, {DEFAULT: "never"}, uploader=uploader)

    with pytest.raises(StorageTransientError):
        asyncio.run(
            service.send_message("alice", "pic", files=[IncomingFile(solid_image_bytes(), "a.png", "image/png")])
        )

    assert transport.calls == []
    assert fake_db.collection("chats").store == {}
    assert service.banner.get("alice").startswith("Upload failed (cors)")


def test_inline_budget_rejects_before_any_network_call(fake_db):
    service, transport, _ = _service(fake_db, {DEFAULT: "never"}, max_message_inline_bytes=100)

    with pytest.raises(PayloadTooLarge):
        asyncio.run(
            service.send_message("alice", "pic", files=[IncomingFile(noise_image_bytes(64, 64), "a.png", "image/png")])
        )

    assert transport.calls == []
    assert fake_db.collection("chats").store == {}


def test_empty_send_is_rejected(fake_db):
    service, _, _ = _service(fake_db, {DEFAULT: "never"})

    with pytest.raises(InvalidRequest):
        asyncio.run(service.send_message("alice", "   "))


def test_images_on_text_only_model_are_rejected(fake_db):
    service, transport, _ = _service(fake_db, {"gemini-2.5-flash-lite": "never"})

    with pytest.raises(InvalidRequest):
        asyncio.run(
            service.send_message(
                "alice", "pic", files=[IncomingFile(solid_image_bytes(), "a.png", "image/png")],
                model="gemini-2.5-flash-lite",
            )
        )
    assert transport.calls == []


def test_concurrent_send_is_rejected(fake_db):
    class SlowTransport(ScriptedTransport):
        async def generate(self, model_id, body):
            await self.release.wait()
            return await super().generate(model_id, body)

    async def scenario():
        transport = SlowTransport({DEFAULT: "done"})
        transport.release = asyncio.Event()
        service = ChatService(
            invoker=ModelInvoker(transport, DEFAULT),
            reconciler=ConversationReconciler(ConversationRepository(fake_db)),
            preferences=PreferencesRepository(fake_db, debounce_seconds=60),
            transcoder=ImageTranscoder(),
        )
        first = asyncio.create_task(service.send_message("alice", "one"))
        while not service.is_busy("alice"):
            await asyncio.sleep(0)
        with pytest.raises(ConversationBusy):
            await service.send_message("alice", "two")
        # other users are not blocked by alice's send
        assert not service.is_busy("bob")
        transport.release.set()
        return await first

    outcome = asyncio.run(scenario())
    assert outcome.reply == "done"


def test_banner_auto_clears():
    clock = Clock()
    banner = StatusBanner(timeout=8, clock=clock)

    banner.set("alice", "Internal server error (500).")
    clock.now = 7.9
    assert banner.get("alice") == "Internal server error (500)."
    clock.now = 8.0
    assert banner.get("alice") is None


def test_banner_clear():
    banner = StatusBanner()
    banner.set("alice", "oops")
    banner.clear("alice")

    assert banner.get("alice") is None


def test_listing_during_generation_keeps_the_user_message(fake_db):
    class ListingTransport(ScriptedTransport):
        async def generate(self, model_id, body):
            # the listing snapshot was taken before the user message was written
            stale = service.reconciler.conversations_for("alice")[0]
            service.reconciler.apply_snapshot("alice", [stale.model_copy(update={"messages": []})])
            return await super().generate(model_id, body)

    transport = ListingTransport({DEFAULT: "Hi there"})
    service = ChatService(
        invoker=ModelInvoker(transport, DEFAULT),
        reconciler=ConversationReconciler(ConversationRepository(fake_db)),
        preferences=PreferencesRepository(fake_db, debounce_seconds=60),
        transcoder=ImageTranscoder(),
    )

    outcome = asyncio.run(service.send_message("alice", "Hello"))

    assert [m.role for m in outcome.conversation.messages] == ["user", "assistant"]
    stored = _stored(fake_db, outcome.conversation.id)
    assert [m["role"] for m in stored["messages"]] == ["user", "assistant"]


def test_inline_images_are_not_retained_or_replayed(fake_db):
    client = MagicMock()
    uploader = AttachmentUploader(client, ["primary"], sleep=lambda _: None)
    service, transport, _ = _service(fake_db, {DEFAULT: "reply"}, uploader=uploader)

    first = asyncio.run(
        service.send_message("alice", "pic", files=[IncomingFile(solid_image_bytes(), "a.png", "image/png")])
    )
    second = asyncio.run(service.send_message("alice", "and now?", conversation_id=first.conversation.id))

    local = service.reconciler.local(first.conversation.id)
    for conversation in (first.conversation, second.conversation, local):
        assert all(image.inline_data is None for m in conversation.messages for image in m.images)
    assert second.conversation.messages[0].images[0].url

    follow_up = transport.calls[1][1]["contents"]
    assert [[key for part in turn["parts"] for key in part] for turn in follow_up] == [
        ["text"],
        ["text"],
        ["text"],
    ]


@pytest.mark.parametrize("chat_id", ["missing", "bobs-chat"])
def test_send_to_foreign_or_missing_chat_uploads_nothing(fake_db, chat_id):
    fake_db.collection("chats").document("bobs-chat").set({"userId": "bob", "title": "private", "messages": []})
    client = MagicMock()
    uploader = AttachmentUploader(client, ["primary"], sleep=lambda _: None)
    service, transport, _ = _service(fake_db, {DEFAULT: "never"}, uploader=uploader)

    with pytest.raises(ConversationNotFound):
        asyncio.run(
            service.send_message(
                "alice", "pic", files=[IncomingFile(solid_image_bytes(), "a.png", "image/png")],
                conversation_id=chat_id,
            )
        )

    client.bucket.return_value.blob.return_value.upload_from_string.assert_not_called()
    assert transport.calls == []
    assert fake_db.collection("chats").store["bobs-chat"]["messages"] == []


def test_non_image_file_is_rejected(fake_db):
    service, transport, _ = _service(fake_db, {DEFAULT: "never"})

    with pytest.raises(InvalidRequest):
        asyncio.run(
            service.send_message("alice", "read this", files=[IncomingFile(b"%PDF-1.7", "doc.pdf", "application/pdf")])
        )

    assert transport.calls == []
    assert fake_db.collection("chats").store == {}
