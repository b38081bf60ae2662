"""
Shared pytest fixtures for clipper tests.

Provides in-memory fakes for every external collaborator so no test
touches the network or a real browser.
"""

import asyncio
from typing import Any, Optional

import pytest

from clipper.errors import MenuCreationError, MenuEntryExists
from clipper.providers.base import MenuEntry
from clipper.service import ClipperService
from clipper.storage import MemoryStorage
from clipper.types import CaptureTarget, Clip, Identity


ALICE = {"uid": "alice", "email": "alice@example.com", "idToken": "tok-alice"}


class FakeSelection:
    """Selection source returning fixed text, or raising."""

    def __init__(self, text: str = "", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls = 0

    async def extract_selection_text(self, target: CaptureTarget) -> str:
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.text


class FakeEndpoint:
    """Annotation endpoint returning a fixed payload, or raising."""

    def __init__(self, payload: Optional[dict] = None, error: Optional[BaseException] = None):
        self.payload = payload if payload is not None else {
            "summary": "Remote summary.", "tags": ["alpha", "beta", "gamma"],
        }
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def summarize(self, text: str, api_key: str) -> dict[str, Any]:
        self.calls.append((text, api_key))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return dict(self.payload)


class FakeAudit:
    """Audit sink that records clips, or raises."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.appended: list[Clip] = []

    async def append(self, clip: Clip, identity: Optional[Identity]) -> None:
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        self.appended.append(clip)


class FakeSurface:
    """
    Trigger surface that keeps entries in creation order.

    ``fail_ids`` makes create() raise a genuine error for those ids.
    ``gate`` (an asyncio.Event) holds clear() until set, to keep a build
    in flight while a test piles up requests.
    """

    def __init__(self):
        self.entries: dict[str, MenuEntry] = {}
        self.fail_ids: set[str] = set()
        self.gate: Optional[asyncio.Event] = None
        self.clear_calls = 0
        self.create_calls = 0
        self.clear_enabled = True

    async def clear(self) -> None:
        self.clear_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        if self.clear_enabled:
            self.entries.clear()

    async def create(self, entry: MenuEntry) -> None:
        self.create_calls += 1
        await asyncio.sleep(0)
        if entry.id in self.fail_ids:
            raise MenuCreationError(f"cannot create {entry.id}")
        if entry.id in self.entries:
            raise MenuEntryExists(f"duplicate id {entry.id}")
        self.entries[entry.id] = entry

    @property
    def ids(self) -> list[str]:
        return list(self.entries)


class ConflictingStorage(MemoryStorage):
    """
    MemoryStorage where an outside writer appends to ``key`` right after
    each of the first ``conflicts`` reads of it.
    """

    def __init__(self, initial=None, *, key: str = "clips", conflicts: int = 1):
        super().__init__(initial)
        self.key = key
        self.conflicts = conflicts
        self.external_writes = 0

    async def get(self, keys):
        keys = list(keys)
        result = await super().get(keys)
        if self.key in keys and self.conflicts > 0:
            self.conflicts -= 1
            self.external_writes += 1
            current = self._data.get(self.key, [])
            self._data[self.key] = current + [{"id": f"external-{self.external_writes}"}]
        return result


def make_clip(id: str, **kwargs) -> dict:
    """A stored clip dict with sensible defaults."""
    fields = {
        "id": id,
        "created_at": 1_700_000_000_000,
        "url": "https://example.com/page",
        "selected_text": f"Text of {id}.",
        "ai_status": "done",
        "ai_source": "mock",
        "owner_uid": "alice",
        "owner_email": "alice@example.com",
    }
    fields.update(kwargs)
    return Clip(**fields).to_dict()


def make_project(id: str, name: Optional[str] = None, owner: str = "alice") -> dict:
    return {"id": id, "name": name or id.title(), "ownerUid": owner, "ownerEmail": f"{owner}@example.com"}


@pytest.fixture
def storage():
    """MemoryStorage with alice signed in."""
    return MemoryStorage({"authUser": dict(ALICE)})


@pytest.fixture
def surface():
    return FakeSurface()


@pytest.fixture
def selection():
    return FakeSelection("This is a test. Extra detail follows.")


@pytest.fixture
def endpoint():
    return FakeEndpoint()


@pytest.fixture
def audit():
    return FakeAudit()


@pytest.fixture
def service(storage, surface, selection, endpoint, audit):
    """ClipperService over fakes; no API key configured unless a test stores one."""
    return ClipperService(storage, surface, selection, endpoint=endpoint, audit=audit)


@pytest.fixture
def page():
    return CaptureTarget(tab_id=7, url="https://example.com/article")


@pytest.fixture(autouse=True)
def no_env_api_key(monkeypatch):
    """Keep a developer's real API key out of the tests."""
    monkeypatch.delenv("CLIPPER_OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
