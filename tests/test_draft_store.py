import asyncio
import json

import pytest

from conftest import FailingDiskStore
from studysphere.constants.storage_constants import DRAFT_KEY
from studysphere.core.services.draft_store import DraftStore
from studysphere.core.storage.key_value import FileKeyValueStore, InMemoryKeyValueStore


class CountingStore(InMemoryKeyValueStore):
    def __init__(self):
        super().__init__()
        self.writes = 0

    def set_item(self, key, value):
        self.writes += 1
        super().set_item(key, value)


@pytest.mark.asyncio
async def test_burst_of_edits_collapses_into_one_write():
    store = CountingStore()
    drafts = DraftStore(store, quiet_seconds=0.05)

    for index in range(5):
        drafts.autosave({"title": f"Draft {index}"})
        await asyncio.sleep(0.01)

    assert store.writes == 0
    assert drafts.has_pending_write
    await asyncio.sleep(0.1)

    assert store.writes == 1
    assert drafts.load_draft() == {"title": "Draft 4"}
    assert not drafts.has_pending_write


@pytest.mark.asyncio
async def test_snapshot_is_copied_at_autosave_time():
    drafts = DraftStore(InMemoryKeyValueStore(), quiet_seconds=10)
    snapshot = {"title": "Original", "questions": []}
    drafts.autosave(snapshot)
    snapshot["title"] = "Changed later"
    snapshot["questions"].append({"text": "late"})

    drafts.flush()

    assert drafts.load_draft() == {"title": "Original", "questions": []}


@pytest.mark.asyncio
async def test_flush_writes_immediately_and_cancels_timer():
    store = CountingStore()
    drafts = DraftStore(store, quiet_seconds=0.02)
    drafts.autosave({"title": "Now"})
    drafts.flush()
    await asyncio.sleep(0.05)

    assert store.writes == 1
    assert json.loads(store.get_item(DRAFT_KEY)) == {"title": "Now"}


def test_flush_without_pending_snapshot_is_noop():
    store = CountingStore()
    DraftStore(store).flush()
    assert store.writes == 0


@pytest.mark.asyncio
async def test_clear_draft_drops_pending_write():
    store = CountingStore()
    drafts = DraftStore(store, quiet_seconds=0.02)
    drafts.autosave({"title": "Discard me"})
    drafts.clear_draft()
    await asyncio.sleep(0.05)

    assert store.writes == 0
    assert drafts.load_draft() is None


def test_missing_draft_loads_as_none():
    assert DraftStore(InMemoryKeyValueStore()).load_draft() is None


@pytest.mark.parametrize("raw", ["{not json", "[1, 2, 3]", '"just a string"'])
def test_corrupt_draft_loads_as_none(raw, caplog):
    drafts = DraftStore(InMemoryKeyValueStore({DRAFT_KEY: raw}))
    assert drafts.load_draft() is None
    assert "draft" in caplog.text.lower()


def test_clear_draft_removes_stored_key():
    store = InMemoryKeyValueStore({DRAFT_KEY: json.dumps({"title": "Old"})})
    drafts = DraftStore(store)
    drafts.clear_draft()
    assert store.get_item(DRAFT_KEY) is None


@pytest.mark.asyncio
async def test_draft_survives_restart_with_file_store(tmp_path):
    path = tmp_path / "local_storage.json"
    drafts = DraftStore(FileKeyValueStore(path), quiet_seconds=10)
    drafts.autosave({"title": "Persisted", "time_limit": "15"})
    drafts.flush()

    reopened = DraftStore(FileKeyValueStore(path))
    assert reopened.load_draft() == {"title": "Persisted", "time_limit": "15"}


@pytest.mark.asyncio
async def test_failed_flush_keeps_snapshot_for_next_attempt(caplog):
    disk = FailingDiskStore()
    disk.broken = True
    drafts = DraftStore(disk, quiet_seconds=10)
    drafts.autosave({"title": "Unsaved"})

    drafts.flush()
    assert disk.get_item(DRAFT_KEY) is None
    assert "Could not save draft" in caplog.text

    disk.broken = False
    drafts.flush()
    assert json.loads(disk.get_item(DRAFT_KEY)) == {"title": "Unsaved"}


def test_file_store_unchanged_when_write_fails(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = FileKeyValueStore(blocker / "local_storage.json")

    with pytest.raises(OSError):
        store.set_item(DRAFT_KEY, "{}")
    assert store.get_item(DRAFT_KEY) is None
    assert store.keys() == []
