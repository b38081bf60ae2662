"""Tests for the capture executor."""

import asyncio
import sqlite3

import pytest

from clipper.annotation import AnnotationResolver
from clipper.capture import CaptureExecutor, can_capture
from clipper.config import AnnotationConfig
from clipper.library import ClipLibrary
from clipper.mutator import StoreMutator
from clipper.service import StorageIdentityProvider
from clipper.storage import MemoryStorage
from clipper.types import CaptureTarget

from conftest import ALICE, ConflictingStorage, FakeAudit, FakeEndpoint, FakeSelection, make_clip


PAGE = CaptureTarget(tab_id=3, url="https://example.com/post")
TEXT = "This is a test. Extra detail follows."


def make_executor(
    storage,
    selection=None,
    *,
    resolver=None,
    audit=None,
    config=None,
):
    async def load_config():
        return config or AnnotationConfig()

    return CaptureExecutor(
        StoreMutator(storage),
        resolver or AnnotationResolver(FakeEndpoint()),
        selection or FakeSelection(TEXT),
        StorageIdentityProvider(storage),
        audit=audit,
        config_loader=load_config,
    )


class RaisingResolver:
    async def resolve(self, text, config=None):
        raise RuntimeError("resolver exploded")


class TestEligibility:
    @pytest.mark.parametrize("url", [
        "https://example.com", "http://example.com/x", "file:///tmp/a.html", "HTTPS://EXAMPLE.COM",
    ])
    def test_allowed(self, url):
        assert can_capture(url)

    @pytest.mark.parametrize("url", [
        "chrome://extensions", "about:blank", "chrome-extension://abc/popup.html",
        "", None, "not a url", "javascript:alert(1)",
    ])
    def test_refused(self, url):
        assert not can_capture(url)

    @pytest.mark.asyncio
    async def test_ineligible_page_is_a_no_op(self, storage):
        selection = FakeSelection(TEXT)
        executor = make_executor(storage, selection)

        ok = await executor.capture(CaptureTarget(tab_id=1, url="chrome://settings"))

        assert ok is False
        assert selection.calls == 0
        assert storage.set_calls == 0


class TestEmptySelection:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   ", "\n\t\n", None])
    async def test_empty_selection_creates_nothing(self, storage, text):
        executor = make_executor(storage, FakeSelection(text))

        assert await executor.capture(PAGE) is False
        assert "clips" not in storage.snapshot()

    @pytest.mark.asyncio
    async def test_unscriptable_page_treated_as_empty(self, storage):
        executor = make_executor(storage, FakeSelection(error=RuntimeError("Cannot access contents")))

        assert await executor.capture(PAGE) is False
        assert "clips" not in storage.snapshot()


class TestCapture:
    @pytest.mark.asyncio
    async def test_clip_saved_and_annotated(self, storage):
        executor = make_executor(storage)

        ok = await executor.capture(PAGE, "proj-1")

        assert ok is True
        [clip] = await ClipLibrary(StoreMutator(storage)).clips()
        assert clip.url == PAGE.url
        assert clip.selected_text == TEXT
        assert clip.project_id == "proj-1"
        assert clip.owner_uid == ALICE["uid"]
        assert clip.owner_email == ALICE["email"]
        assert clip.ai_status == "done"
        assert clip.ai_source == "mock"
        assert clip.summary == "This is a test."
        assert 3 <= len(clip.tags) <= 5
        assert clip.created_at > 0
        assert executor.in_flight == frozenset()

    @pytest.mark.asyncio
    async def test_selection_trimmed(self, storage):
        executor = make_executor(storage, FakeSelection("   padded text   "))
        await executor.capture(PAGE)
        assert storage.snapshot()["clips"][0]["selectedText"] == "padded text"

    @pytest.mark.asyncio
    async def test_no_identity_leaves_owner_empty(self):
        storage = MemoryStorage()
        executor = make_executor(storage)

        assert await executor.capture(PAGE) is True

        clip = storage.snapshot()["clips"][0]
        assert clip["ownerUid"] == ""
        assert clip["ownerEmail"] == ""

    @pytest.mark.asyncio
    async def test_newest_first(self, storage):
        storage._data["clips"] = [make_clip("older")]
        executor = make_executor(storage)

        await executor.capture(PAGE)

        ids = [c["id"] for c in storage.snapshot()["clips"]]
        assert ids[1] == "older"
        assert len(ids) == 2

    @pytest.mark.asyncio
    async def test_unassigned_project_stored_as_empty(self, storage):
        executor = make_executor(storage)
        await executor.capture(PAGE, None)
        assert storage.snapshot()["clips"][0]["projectId"] == ""

    @pytest.mark.asyncio
    async def test_remote_annotation_used_when_key_set(self, storage):
        endpoint = FakeEndpoint({"summary": "From the model.", "tags": ["x", "y", "z"]})
        executor = make_executor(
            storage,
            resolver=AnnotationResolver(endpoint),
            config=AnnotationConfig(api_key="sk-test"),
        )

        await executor.capture(PAGE)

        clip = storage.snapshot()["clips"][0]
        assert clip["aiSource"] == "remote"
        assert clip["summary"] == "From the model."
        assert endpoint.calls == [(TEXT, "sk-test")]

    @pytest.mark.asyncio
    async def test_resolver_exception_becomes_error_source(self, storage):
        executor = make_executor(storage, resolver=RaisingResolver())

        assert await executor.capture(PAGE) is True

        clip = storage.snapshot()["clips"][0]
        assert clip["aiStatus"] == "done"
        assert clip["aiSource"] == "error"
        assert clip["summary"] == ""
        assert clip["tags"] == []

    @pytest.mark.asyncio
    async def test_pending_clip_visible_before_annotation(self, storage):
        """The clip is stored as pending before the resolver runs."""
        seen = []

        class PeekingResolver:
            async def resolve(self, text, config=None):
                seen.extend(storage.snapshot()["clips"])
                return await AnnotationResolver().resolve(text, config)

        executor = make_executor(storage, resolver=PeekingResolver())
        await executor.capture(PAGE)

        assert seen[0]["aiStatus"] == "pending"
        assert seen[0]["aiSource"] == "manual"
        assert executor.in_flight == frozenset()


class TestConcurrentCaptures:
    @pytest.mark.asyncio
    async def test_two_captures_both_persist(self, storage):
        storage._data["clips"] = [make_clip("existing")]
        executor = make_executor(storage)

        results = await asyncio.gather(executor.capture(PAGE), executor.capture(PAGE))

        assert results == [True, True]
        clips = storage.snapshot()["clips"]
        assert len(clips) == 3
        assert all(c["aiStatus"] == "done" for c in clips)

    @pytest.mark.asyncio
    async def test_many_captures_with_separate_executors(self, storage):
        """Independent triggers sharing one mutator lose nothing."""
        mutator = StoreMutator(storage)
        identity = StorageIdentityProvider(storage)
        executors = [
            CaptureExecutor(mutator, AnnotationResolver(), FakeSelection(f"Clip number {i}."), identity)
            for i in range(10)
        ]

        await asyncio.gather(*[e.capture(PAGE) for e in executors])

        clips = storage.snapshot()["clips"]
        assert len(clips) == 10
        assert {c["selectedText"] for c in clips} == {f"Clip number {i}." for i in range(10)}


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_audit_receives_raw_clip(self, storage):
        audit = FakeAudit()
        executor = make_executor(storage, audit=audit)

        await executor.capture(PAGE)
        await executor.drain()

        [mirrored] = audit.appended
        assert mirrored.selected_text == TEXT
        assert mirrored.ai_status == "pending"

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_affect_capture(self, storage):
        executor = make_executor(storage, audit=FakeAudit(error=ConnectionError("offline")))

        assert await executor.capture(PAGE) is True
        await executor.drain()

        assert storage.snapshot()["clips"][0]["aiStatus"] == "done"

    @pytest.mark.asyncio
    async def test_insert_exhaustion_reports_failure(self):
        storage = ConflictingStorage({"authUser": dict(ALICE)}, conflicts=100)
        executor = make_executor(storage)

        assert await executor.capture(PAGE) is False
        assert all(c["id"].startswith("external-") for c in storage.snapshot()["clips"])

    @pytest.mark.asyncio
    async def test_clip_deleted_before_write_back_stays_deleted(self, storage):
        library = ClipLibrary(StoreMutator(storage))

        class DeletingResolver:
            async def resolve(self, text, config=None):
                await library.delete_clips([c.id for c in await library.clips()])
                return await AnnotationResolver().resolve(text, config)

        executor = make_executor(storage, resolver=DeletingResolver())

        assert await executor.capture(PAGE) is True
        assert storage.snapshot()["clips"] == []

    @pytest.mark.asyncio
    async def test_annotate_never_reverts_done(self, storage):
        """A clip already marked done is not overwritten by a late write-back."""
        storage._data["clips"] = [make_clip("c1", summary="User edited.", ai_source="remote")]
        executor = make_executor(storage)
        clip = (await ClipLibrary(StoreMutator(storage)).clips())[0]

        assert await executor.annotate(clip) is False

        stored = storage.snapshot()["clips"][0]
        assert stored["summary"] == "User edited."
        assert stored["aiSource"] == "remote"

    @pytest.mark.asyncio
    async def test_write_back_storage_error_leaves_clip_pending(self, tmp_path, monkeypatch):
        """A storage failure after the insert does not turn the capture into a failure."""
        monkeypatch.setenv("CLIPPER_STORE_PATH", str(tmp_path))

        class LockedAfterInsert(MemoryStorage):
            async def set(self, values):
                if self.set_calls >= 1:
                    self.set_calls += 1
                    raise sqlite3.OperationalError("database is locked")
                await super().set(values)

        storage = LockedAfterInsert({"authUser": dict(ALICE)})
        executor = make_executor(storage)

        assert await executor.capture(PAGE) is True

        [clip] = storage.snapshot()["clips"]
        assert clip["aiStatus"] == "pending"
        assert executor.in_flight == frozenset()
        assert "database is locked" in (tmp_path / "clipper-errors.log").read_text()
