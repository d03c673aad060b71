"""
Pytest configuration and fixtures for the test suite.

Provides an in-memory stand-in for the Firestore client, image factories
and a scripted Gemini transport so that no test touches the network.
"""

import datetime as dt
import io
import random
import uuid
from typing import Any, Dict, List, Optional

import pytest
from google.cloud.firestore import SERVER_TIMESTAMP, ArrayUnion
from PIL import Image

from gemini_chat.errors import upstream_error


# ---------------------------------------------------------------------------
# Firestore
# ---------------------------------------------------------------------------
class FakeSnapshot:
    def __init__(self, doc_id: str, data: Optional[Dict[str, Any]]):
        self.id = doc_id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return dict(self._data) if self._data is not None else None


class FakeDocument:
    def __init__(self, store: Dict[str, Dict[str, Any]], doc_id: str, log: List[tuple]):
        self._store = store
        self.id = doc_id
        self._log = log

    def set(self, data: Dict[str, Any], merge: bool = False) -> None:
        existing = self._store.get(self.id, {}) if merge else {}
        resolved = {}
        for k, v in data.items():
            if v is SERVER_TIMESTAMP:
                v = dt.datetime.now(dt.timezone.utc)
            elif isinstance(v, ArrayUnion):
                current = list(existing.get(k) or [])
                v = current + [item for item in v.values if item not in current]
            resolved[k] = v
        self._log.append((self.id, data, merge))
        if merge and self.id in self._store:
            self._store[self.id].update(resolved)
        else:
            self._store[self.id] = resolved

    def get(self) -> FakeSnapshot:
        return FakeSnapshot(self.id, self._store.get(self.id))


class FakeQuery:
    def __init__(self, collection: "FakeCollection", filters=(), order=None):
        self._collection = collection
        self._filters = list(filters)
        self._order = order

    def where(self, filter=None):
        return FakeQuery(self._collection, self._filters + [filter], self._order)

    def order_by(self, field: str, direction: str = "ASCENDING"):
        return FakeQuery(self._collection, self._filters, (field, direction))

    def stream(self):
        docs = []
        for doc_id, data in self._collection.store.items():
            if all(data.get(f.field_path) == f.value for f in self._filters):
                docs.append(FakeSnapshot(doc_id, data))
        if self._order:
            field, direction = self._order
            docs.sort(key=lambda d: d.to_dict()[field], reverse=direction == "DESCENDING")
        return iter(docs)


class FakeCollection(FakeQuery):
    def __init__(self):
        self.store: Dict[str, Dict[str, Any]] = {}
        self.writes: List[tuple] = []
        super().__init__(self)

    def document(self, doc_id: Optional[str] = None) -> FakeDocument:
        return FakeDocument(self.store, doc_id or uuid.uuid4().hex[:20], self.writes)


class FakeFirestore:
    project = "test-project"

    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def collection(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())


@pytest.fixture
def fake_db() -> FakeFirestore:
    return FakeFirestore()


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------
def noise_image_bytes(width: int, height: int, fmt: str = "PNG", seed: int = 7) -> bytes:
    """Incompressible RGB noise, so encoded sizes stay predictable."""
    rng = random.Random(seed)
    image = Image.frombytes("RGB", (width, height), rng.randbytes(width * height * 3))
    with io.BytesIO() as buffer:
        image.save(buffer, format=fmt)
        return buffer.getvalue()


def solid_image_bytes(width: int = 32, height: int = 32, fmt: str = "PNG", color=(200, 30, 30)) -> bytes:
    image = Image.new("RGB", (width, height), color)
    with io.BytesIO() as buffer:
        image.save(buffer, format=fmt)
        return buffer.getvalue()


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------
class ScriptedTransport:
    """Answers per model: a string is the reply, an exception is raised."""

    def __init__(self, script: Dict[str, Any]):
        self.script = script
        self.calls: List[tuple] = []

    async def generate(self, model_id: str, body: Dict[str, Any]) -> str:
        self.calls.append((model_id, body))
        outcome = self.script.get(model_id) or upstream_error(404, f"models/{model_id} is not found")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
