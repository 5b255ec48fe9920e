from datetime import datetime, timezone

import httpx
from postgrest.exceptions import APIError
import pytest

from conftest import FailingDiskStore, build_passage
from studysphere.constants.storage_constants import ATTEMPTS_COLLECTION, PASSAGES_COLLECTION
from studysphere.core.errors import (
    AuthenticationError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
    ValidationError,
)
from studysphere.core.models import Attempt, Difficulty, Subject
from studysphere.core.query import Query, apply_query
from studysphere.core.services.backends import LocalDocumentBackend, SupabaseDocumentBackend
from studysphere.core.services.repository import AttemptFilter, PassageFilter, StudyRepository
from studysphere.core.storage.key_value import InMemoryKeyValueStore


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeTableRequest:
    """Chainable stand-in for a supabase table request, evaluated in memory."""

    def __init__(self, rows, error=None):
        self._rows = rows
        self._error = error
        self._filters = []
        self._orders = []
        self._limit = None
        self._action = ("select", None)

    def select(self, *_columns):
        return self

    def insert(self, payload):
        self._action = ("insert", payload)
        return self

    def upsert(self, payload):
        self._action = ("upsert", payload)
        return self

    def update(self, payload):
        self._action = ("update", payload)
        return self

    def delete(self):
        self._action = ("delete", None)
        return self

    def eq(self, field, value):
        self._filters.append(lambda row: row.get(field) == value)
        return self

    def gte(self, field, value):
        self._filters.append(lambda row: row.get(field) is not None and row[field] >= value)
        return self

    def lte(self, field, value):
        self._filters.append(lambda row: row.get(field) is not None and row[field] <= value)
        return self

    def order(self, field, desc=False):
        self._orders.append((field, desc))
        return self

    def limit(self, count):
        self._limit = count
        return self

    def execute(self):
        if self._error is not None:
            raise self._error
        action, payload = self._action
        if action in ("insert", "upsert"):
            row = dict(payload)
            row.setdefault("id", f"row{len(self._rows)}")
            self._rows[:] = [existing for existing in self._rows if existing["id"] != row["id"]]
            self._rows.append(row)
            return FakeResponse([dict(row)])
        matched = [row for row in self._rows if all(check(row) for check in self._filters)]
        if action == "update":
            for row in matched:
                row.update(payload)
            return FakeResponse([dict(row) for row in matched])
        if action == "delete":
            self._rows[:] = [row for row in self._rows if row not in matched]
            return FakeResponse(matched)
        for field, desc in reversed(self._orders):
            matched.sort(key=lambda row: row[field], reverse=desc)
        if self._limit is not None:
            matched = matched[: self._limit]
        return FakeResponse([dict(row) for row in matched])


class FakeSupabaseClient:
    def __init__(self, error=None):
        self.tables = {}
        self.error = error

    def table(self, name):
        return FakeTableRequest(self.tables.setdefault(name, []), self.error)


class RecordingBackend(LocalDocumentBackend):
    def __init__(self):
        super().__init__(InMemoryKeyValueStore())
        self.calls = []

    async def create(self, collection, data, timestamp_fields=()):
        self.calls.append("create")
        return await super().create(collection, data, timestamp_fields)

    async def get(self, collection, doc_id):
        self.calls.append("get")
        return await super().get(collection, doc_id)

    async def update(self, collection, doc_id, changes, timestamp_fields=()):
        self.calls.append("update")
        return await super().update(collection, doc_id, changes, timestamp_fields)

    async def delete(self, collection, doc_id):
        self.calls.append("delete")
        return await super().delete(collection, doc_id)


def passage_records():
    specs = [
        ("p_a", "Acids", Subject.CHEMISTRY, Difficulty.EASY, 10, True, "2024-03-01T10:00:00+00:00", "Reactions"),
        ("p_b", "Bonds", Subject.CHEMISTRY, Difficulty.HARD, 20, True, "2024-03-02T10:00:00+00:00", "Structure"),
        ("p_c", "Cells", Subject.BIOLOGY, Difficulty.EASY, 15, True, "2024-03-02T10:00:00+00:00", "Cells"),
        ("p_d", "Drafted", Subject.BIOLOGY, Difficulty.MEDIUM, 5, False, "2024-03-03T10:00:00+00:00", None),
        ("p_e", "Energy", Subject.PHYSICS, Difficulty.MEDIUM, 10, True, "2024-03-01T10:00:00+00:00", None),
        ("p_f", "Faults", Subject.GEOLOGY, Difficulty.HARD, 25, True, "2024-02-28T10:00:00+00:00", "Tectonics"),
    ]
    records = []
    for passage_id, title, subject, difficulty, minutes, published, created_at, category in specs:
        record = build_passage(
            passage_id,
            title=title,
            subject=subject,
            difficulty=difficulty,
            time_limit_minutes=minutes,
            is_published=published,
            category=category,
        ).to_record()
        record["created_at"] = created_at
        record["updated_at"] = created_at
        records.append(record)
    return records


def make_attempt(user_id="someone-else", subject=Subject.BIOLOGY, score=50, passage_id="p_sample"):
    return Attempt(
        id=None,
        user_id=user_id,
        passage_id=passage_id,
        subject=subject,
        score=score,
        answers={0: 1},
        time_taken_seconds=90,
        total_questions=2,
        correct_count=1,
    )


@pytest.mark.asyncio
async def test_admin_creates_passage_with_metadata(repository, sign_up):
    admin = await sign_up("admin@example.com", admin=True)

    created = await repository.create_passage(build_passage("p_new", is_published=False))

    assert created.created_by == admin.id
    assert created.created_at is not None
    assert created.updated_at is not None
    fetched = await repository.get_passage("p_new")
    assert fetched.title == "Cell Biology Basics"


@pytest.mark.asyncio
async def test_student_writes_are_denied_before_backend_io(session, store, sign_up):
    await sign_up()
    backend = RecordingBackend()
    repository = StudyRepository(backend, session, cache_store=store)

    with pytest.raises(PermissionDeniedError):
        await repository.create_passage(build_passage())
    with pytest.raises(PermissionDeniedError):
        await repository.update_passage("p_sample", {"title": "New"})
    with pytest.raises(PermissionDeniedError):
        await repository.set_published("p_sample", True)
    with pytest.raises(PermissionDeniedError):
        await repository.delete_passage("p_sample")
    assert backend.calls == []


@pytest.mark.asyncio
async def test_signed_out_writes_need_authentication(repository):
    with pytest.raises(AuthenticationError):
        await repository.create_passage(build_passage())
    with pytest.raises(AuthenticationError):
        await repository.save_attempt(make_attempt())


@pytest.mark.asyncio
async def test_unpublished_passages_hidden_from_students(repository, sign_up, seed_passage):
    await sign_up()
    await seed_passage(build_passage("p_live"))
    await seed_passage(build_passage("p_draft", is_published=False))

    assert await repository.get_passage("p_draft") is None
    listed = await repository.list_passages(PassageFilter(published_only=False))
    assert [passage.id for passage in listed] == ["p_live"]


@pytest.mark.asyncio
async def test_admin_sees_drafts_unless_published_only(repository, sign_up, seed_passage):
    await sign_up("admin@example.com", admin=True)
    await seed_passage(build_passage("p_live"))
    await seed_passage(build_passage("p_draft", is_published=False))

    everything = await repository.list_passages()
    published = await repository.list_passages(PassageFilter(published_only=True))

    assert {passage.id for passage in everything} == {"p_live", "p_draft"}
    assert [passage.id for passage in published] == ["p_live"]
    assert (await repository.get_passage("p_draft")).id == "p_draft"


@pytest.mark.parametrize("admin", [False, True])
@pytest.mark.parametrize(
    "passage_filter",
    [
        PassageFilter(),
        PassageFilter(subject=Subject.CHEMISTRY),
        PassageFilter(difficulty=Difficulty.EASY, descending=False),
        PassageFilter(category="Cells"),
        PassageFilter(order_by="title", descending=False, limit=3),
        PassageFilter(order_by="time_limit_minutes"),
        PassageFilter(order_by="created_at", limit=2),
    ],
)
@pytest.mark.asyncio
async def test_client_and_server_queries_agree(passage_filter, admin, session, store, sign_up):
    await sign_up("reader@example.com", admin=admin)
    records = passage_records()

    local_backend = LocalDocumentBackend(InMemoryKeyValueStore())
    client = FakeSupabaseClient()
    for record in records:
        await local_backend.upsert(PASSAGES_COLLECTION, record)
        client.tables.setdefault(PASSAGES_COLLECTION, []).append(dict(record))

    local = StudyRepository(local_backend, session)
    remote = StudyRepository(SupabaseDocumentBackend(client), session)

    local_ids = [passage.id for passage in await local.list_passages(passage_filter)]
    remote_ids = [passage.id for passage in await remote.list_passages(passage_filter)]

    assert local_ids == remote_ids
    if not admin:
        assert "p_d" not in local_ids


@pytest.mark.asyncio
async def test_ties_are_broken_by_id(repository, sign_up, backend):
    await sign_up()
    for record in passage_records():
        await backend.upsert(PASSAGES_COLLECTION, record)

    passages = await repository.list_passages(PassageFilter(order_by="created_at", descending=True))

    # p_b and p_c share a timestamp, as do p_a and p_e.
    assert [passage.id for passage in passages] == ["p_b", "p_c", "p_a", "p_e", "p_f"]


@pytest.mark.asyncio
async def test_unknown_order_field_is_rejected(repository):
    with pytest.raises(ValidationError):
        await repository.list_passages(PassageFilter(order_by="text"))


@pytest.mark.asyncio
async def test_update_validates_before_writing(repository, sign_up, seed_passage):
    await sign_up("admin@example.com", admin=True)
    await seed_passage(build_passage("p_edit"))

    with pytest.raises(ValidationError):
        await repository.update_passage("p_edit", {"created_by": "someone"})
    with pytest.raises(ValidationError):
        await repository.update_passage("p_edit", {"time_limit_minutes": 0})
    with pytest.raises(NotFoundError):
        await repository.update_passage("p_missing", {"title": "Nope"})

    unchanged = await repository.get_passage("p_edit")
    assert unchanged.time_limit_minutes == 1

    updated = await repository.update_passage("p_edit", {"title": "Renamed"})
    assert updated.title == "Renamed"
    assert updated.updated_at is not None


@pytest.mark.asyncio
async def test_publish_toggle_and_delete(repository, sign_up, seed_passage):
    await sign_up("admin@example.com", admin=True)
    await seed_passage(build_passage("p_toggle", is_published=False))

    published = await repository.set_published("p_toggle", True)
    assert published.is_published
    assert repository.cached_passage("p_toggle") is None
    await repository.get_passage("p_toggle")
    assert repository.cached_passage("p_toggle") is not None

    await repository.delete_passage("p_toggle")
    assert await repository.get_passage("p_toggle") is None
    assert repository.cached_passage("p_toggle") is None


@pytest.mark.asyncio
async def test_search_matches_title_and_text(repository, sign_up, seed_passage):
    await sign_up()
    await seed_passage(build_passage("p_one", title="Plate Tectonics", text="Continents drift."))
    await seed_passage(build_passage("p_two", title="Photosynthesis", text="Chlorophyll absorbs light."))

    assert [p.id for p in await repository.search_passages("tectonic")] == ["p_one"]
    assert [p.id for p in await repository.search_passages("CHLOROPHYLL")] == ["p_two"]
    assert len(await repository.search_passages("  ")) == 2


@pytest.mark.asyncio
async def test_save_attempt_uses_session_identity(repository, sign_up):
    identity = await sign_up()

    saved = await repository.save_attempt(make_attempt(user_id="forged-user"))

    assert saved.user_id == identity.id
    assert saved.id is not None
    assert saved.attempted_at is not None


@pytest.mark.asyncio
async def test_attempts_are_isolated_per_user(repository, session, sign_up):
    await sign_up("first@example.com")
    await repository.save_attempt(make_attempt(score=10))
    await session.sign_out()

    second = await sign_up("second@example.com")
    await repository.save_attempt(make_attempt(score=90))

    attempts = await repository.list_attempts_for_user()
    assert [attempt.score for attempt in attempts] == [90]
    assert all(attempt.user_id == second.id for attempt in attempts)


@pytest.mark.asyncio
async def test_attempt_filters_and_newest_first(repository, backend, sign_up):
    identity = await sign_up()
    stamps = ["2024-05-01T09:00:00+00:00", "2024-05-03T09:00:00+00:00", "2024-05-05T09:00:00+00:00"]
    subjects = [Subject.BIOLOGY, Subject.PHYSICS, Subject.BIOLOGY]
    for index, (stamp, subject) in enumerate(zip(stamps, subjects)):
        record = make_attempt(user_id=identity.id, subject=subject, score=index * 10).to_record()
        record["id"] = f"a{index}"
        record["attempted_at"] = stamp
        await backend.upsert(ATTEMPTS_COLLECTION, record)

    newest_first = await repository.list_attempts_for_user()
    biology = await repository.list_attempts_for_user(AttemptFilter(subject=Subject.BIOLOGY))
    window = await repository.list_attempts_for_user(
        AttemptFilter(
            start=datetime(2024, 5, 2, tzinfo=timezone.utc),
            end=datetime(2024, 5, 4, tzinfo=timezone.utc),
        )
    )
    limited = await repository.list_attempts_for_user(AttemptFilter(limit=1))

    assert [a.id for a in newest_first] == ["a2", "a1", "a0"]
    assert [a.id for a in biology] == ["a2", "a0"]
    assert [a.id for a in window] == ["a1"]
    assert [a.id for a in limited] == ["a2"]


@pytest.mark.asyncio
async def test_attempts_for_passage(repository, sign_up):
    await sign_up()
    await repository.save_attempt(make_attempt(passage_id="p_one"))
    await repository.save_attempt(make_attempt(passage_id="p_two"))

    attempts = await repository.attempts_for_passage("p_one")
    assert [attempt.passage_id for attempt in attempts] == ["p_one"]


@pytest.mark.parametrize(
    "error",
    [
        APIError({"message": "relation does not exist", "code": "42P01", "hint": None, "details": None}),
        httpx.ConnectError("connection refused"),
    ],
)
@pytest.mark.asyncio
async def test_backend_failures_become_transient(error, session, sign_up):
    await sign_up()
    repository = StudyRepository(SupabaseDocumentBackend(FakeSupabaseClient(error=error)), session)

    with pytest.raises(TransientError):
        await repository.list_passages()
    with pytest.raises(TransientError):
        await repository.save_attempt(make_attempt())


@pytest.mark.asyncio
async def test_imported_passage_without_timestamps_still_lists(repository, sign_up, seed_passage):
    await sign_up("admin@example.com", admin=True)
    await seed_passage(build_passage("p_seeded"))

    imported = await repository.import_passage(build_passage("p_imported"))

    assert imported.created_at is not None
    assert imported.updated_at == imported.created_at
    assert [p.id for p in await repository.list_passages()] == ["p_imported", "p_seeded"]


def test_missing_sort_values_order_like_postgres():
    records = [
        {"id": "b", "created_at": None},
        {"id": "a", "created_at": "2024-01-01T00:00:00+00:00"},
        {"id": "c"},
    ]

    ascending = apply_query(records, Query().ordered("created_at"))
    descending = apply_query(records, Query().ordered("created_at", descending=True))

    assert [record["id"] for record in ascending] == ["a", "b", "c"]
    assert [record["id"] for record in descending] == ["b", "c", "a"]


@pytest.mark.asyncio
async def test_update_stores_canonical_values(repository, backend, sign_up, seed_passage):
    await sign_up("admin@example.com", admin=True)
    await seed_passage(build_passage("p_edit", subject=Subject.PHYSICS))
    await seed_passage(build_passage("p_other", subject=Subject.CHEMISTRY, time_limit_minutes=5))

    updated = await repository.update_passage("p_edit", {"subject": "biology", "time_limit_minutes": "10"})

    assert updated.subject is Subject.BIOLOGY
    stored = await backend.get(PASSAGES_COLLECTION, "p_edit")
    assert (stored["subject"], stored["time_limit_minutes"]) == ("Biology", 10)
    biology = await repository.list_passages(PassageFilter(subject=Subject.BIOLOGY))
    assert [p.id for p in biology] == ["p_edit"]
    by_limit = await repository.list_passages(PassageFilter(order_by="time_limit_minutes", descending=False))
    assert [p.id for p in by_limit] == ["p_other", "p_edit"]


@pytest.mark.asyncio
async def test_update_rejects_unknown_and_malformed_fields(repository, sign_up, seed_passage):
    await sign_up("admin@example.com", admin=True)
    await seed_passage(build_passage("p_edit"))

    with pytest.raises(ValidationError) as unknown:
        await repository.update_passage("p_edit", {"colour": "red"})
    assert unknown.value.message == "Unknown passage fields: colour"
    with pytest.raises(ValidationError):
        await repository.update_passage("p_edit", {"time_limit_minutes": "soon"})
    with pytest.raises(ValidationError):
        await repository.update_passage("p_edit", {"title": "  "})
    with pytest.raises(ValidationError):
        await repository.update_passage("p_edit", {"updated_at": "2024-01-01T00:00:00+00:00"})

    assert (await repository.get_passage("p_edit")).title == "Cell Biology Basics"


@pytest.mark.asyncio
async def test_local_write_failures_become_transient(session, sign_up):
    await sign_up("admin@example.com", admin=True)
    disk = FailingDiskStore()
    repository = StudyRepository(LocalDocumentBackend(disk), session, cache_store=disk)
    await repository.create_passage(build_passage("p_cached"))
    disk.broken = True

    with pytest.raises(TransientError):
        await repository.save_attempt(make_attempt())
    with pytest.raises(TransientError):
        await repository.create_passage(build_passage("p_new"))
    # Cache writes are best effort; reads keep working.
    assert (await repository.get_passage("p_cached")).id == "p_cached"
