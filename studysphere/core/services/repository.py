"""Passage and attempt persistence, independent of the active backend."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import json
import logging
from typing import Any

from studysphere.constants.quiz_constants import DEFAULT_ATTEMPT_LIMIT
from studysphere.constants.storage_constants import (
    ATTEMPTS_COLLECTION,
    PASSAGE_CACHE_KEY,
    PASSAGES_COLLECTION,
)
from studysphere.core.errors import NotFoundError, ValidationError
from studysphere.core.models import Attempt, Difficulty, Passage, Subject, utcnow
from studysphere.core.query import Query, apply_query
from studysphere.core.services.backends import DocumentBackend
from studysphere.core.services.session import SessionContext
from studysphere.core.storage.key_value import KeyValueStore

logger = logging.getLogger(__name__)

PASSAGE_ORDER_FIELDS = frozenset({"created_at", "title", "subject", "time_limit_minutes"})
PASSAGE_IMMUTABLE_FIELDS = frozenset({"id", "created_at", "created_by", "updated_at"})
PASSAGE_EDITABLE_FIELDS = frozenset(
    {
        "title",
        "subject",
        "category",
        "difficulty",
        "time_limit_minutes",
        "text",
        "source",
        "tags",
        "questions",
        "is_published",
    }
)


@dataclass(slots=True)
class PassageFilter:
    subject: Subject | None = None
    difficulty: Difficulty | None = None
    category: str | None = None
    # None means "published only unless the caller is an admin".
    published_only: bool | None = None
    order_by: str = "created_at"
    descending: bool = True
    limit: int | None = None


@dataclass(slots=True)
class AttemptFilter:
    subject: Subject | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int | None = DEFAULT_ATTEMPT_LIMIT


class StudyRepository:
    """CRUD and filtered queries for passages and attempts.

    Admin checks happen before any backend call. Backend failures surface
    as ``TransientError``; nothing here retries.
    """

    def __init__(
        self,
        backend: DocumentBackend,
        session: SessionContext,
        cache_store: KeyValueStore | None = None,
    ) -> None:
        self._backend = backend
        self._session = session
        self._cache_store = cache_store

    # --- Passages ---

    async def create_passage(self, passage: Passage) -> Passage:
        identity = await self._session.ensure_admin()
        record = passage.to_record()
        record["created_by"] = identity.id
        stored = await self._backend.create(
            PASSAGES_COLLECTION, record, timestamp_fields=("created_at", "updated_at")
        )
        created = Passage.from_record(stored)
        logger.info("Created passage %s (%s)", created.id, created.title)
        return created

    async def update_passage(self, passage_id: str, changes: dict[str, Any]) -> Passage:
        await self._session.ensure_admin()
        immutable = PASSAGE_IMMUTABLE_FIELDS & set(changes)
        if immutable:
            raise ValidationError(f"Fields cannot be changed: {', '.join(sorted(immutable))}")
        unknown = set(changes) - PASSAGE_EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown passage fields: {', '.join(sorted(unknown))}")
        existing = await self._backend.get(PASSAGES_COLLECTION, passage_id)
        if existing is None:
            raise NotFoundError(f"Passage '{passage_id}' does not exist.")
        try:
            normalized = Passage.from_record({**existing, **changes}).to_record()
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed passage: {exc}") from exc
        # Store the canonical forms so filters and ordering see consistent values.
        stored = await self._backend.update(
            PASSAGES_COLLECTION,
            passage_id,
            {name: normalized[name] for name in changes},
            timestamp_fields=("updated_at",),
        )
        updated = Passage.from_record(stored)
        logger.info("Updated passage %s", passage_id)
        return updated

    async def set_published(self, passage_id: str, is_published: bool) -> Passage:
        return await self.update_passage(passage_id, {"is_published": is_published})

    async def delete_passage(self, passage_id: str) -> None:
        await self._session.ensure_admin()
        await self._backend.delete(PASSAGES_COLLECTION, passage_id)
        self._drop_cached(passage_id)
        logger.info("Deleted passage %s", passage_id)

    async def import_passage(self, passage: Passage) -> Passage:
        """Insert or replace a passage with its existing id (file imports)."""
        await self._session.ensure_admin()
        record = passage.to_record()
        record["created_at"] = record["created_at"] or utcnow().isoformat()
        record["updated_at"] = record["updated_at"] or record["created_at"]
        stored = await self._backend.upsert(PASSAGES_COLLECTION, record)
        return Passage.from_record(stored)

    async def get_passage(self, passage_id: str) -> Passage | None:
        record = await self._backend.get(PASSAGES_COLLECTION, passage_id)
        if record is None:
            return None
        passage = Passage.from_record(record)
        if not passage.is_published and not await self._session.is_admin():
            return None
        self._cache([passage])
        return passage

    async def list_passages(self, passage_filter: PassageFilter | None = None) -> list[Passage]:
        query = await self.build_passage_query(passage_filter or PassageFilter())
        if self._backend.supports_server_query:
            records = await self._backend.query(PASSAGES_COLLECTION, query)
        else:
            # Fetch everything and plan locally.
            records = apply_query(await self._backend.query(PASSAGES_COLLECTION, Query()), query)
        passages = [Passage.from_record(record) for record in records]
        self._cache(passages)
        return passages

    async def build_passage_query(self, passage_filter: PassageFilter) -> Query:
        if passage_filter.order_by not in PASSAGE_ORDER_FIELDS:
            raise ValidationError(f"Cannot order passages by '{passage_filter.order_by}'.")
        # Non-admins never see unpublished passages, whatever they ask for.
        published_only = passage_filter.published_only is True or not await self._session.is_admin()
        query = Query()
        if passage_filter.subject is not None:
            query = query.where("subject", passage_filter.subject.value)
        if passage_filter.difficulty is not None:
            query = query.where("difficulty", passage_filter.difficulty.value)
        if passage_filter.category:
            query = query.where("category", passage_filter.category)
        if published_only:
            query = query.where("is_published", True)
        return query.ordered(passage_filter.order_by, passage_filter.descending).limited(passage_filter.limit)

    async def search_passages(self, term: str, passage_filter: PassageFilter | None = None) -> list[Passage]:
        passages = await self.list_passages(passage_filter)
        needle = term.strip().lower()
        if not needle:
            return passages
        return [
            passage
            for passage in passages
            if needle in passage.title.lower() or needle in passage.text.lower()
        ]

    def cached_passage(self, passage_id: str) -> Passage | None:
        """Return a passage from the offline cache, if it was seen before."""
        record = self._read_cache().get(passage_id)
        return Passage.from_record(record) if record is not None else None

    # --- Attempts ---

    async def save_attempt(self, attempt: Attempt) -> Attempt:
        identity = self._session.ensure_authenticated()
        record = attempt.to_record()
        record["user_id"] = identity.id
        stored = await self._backend.create(
            ATTEMPTS_COLLECTION, record, timestamp_fields=("attempted_at",)
        )
        saved = Attempt.from_record(stored)
        logger.info("Saved attempt %s for passage %s (score %s)", saved.id, saved.passage_id, saved.score)
        return saved

    async def list_attempts_for_user(self, attempt_filter: AttemptFilter | None = None) -> list[Attempt]:
        identity = self._session.ensure_authenticated()
        attempt_filter = attempt_filter or AttemptFilter()
        query = Query().where("user_id", identity.id)
        if attempt_filter.subject is not None:
            query = query.where("subject", attempt_filter.subject.value)
        if attempt_filter.start is not None:
            query = query.where_range("attempted_at", "gte", attempt_filter.start)
        if attempt_filter.end is not None:
            query = query.where_range("attempted_at", "lte", attempt_filter.end)
        query = query.ordered("attempted_at", descending=True).limited(attempt_filter.limit)
        return await self._query_attempts(query, identity.id)

    async def attempts_for_passage(self, passage_id: str) -> list[Attempt]:
        identity = self._session.ensure_authenticated()
        query = (
            Query()
            .where("user_id", identity.id)
            .where("passage_id", passage_id)
            .ordered("attempted_at", descending=True)
        )
        return await self._query_attempts(query, identity.id)

    async def _query_attempts(self, query: Query, user_id: str) -> list[Attempt]:
        if self._backend.supports_server_query:
            records = await self._backend.query(ATTEMPTS_COLLECTION, query)
        else:
            records = apply_query(await self._backend.query(ATTEMPTS_COLLECTION, Query()), query)
        # The user filter is already in the query; this guards against a backend ignoring it.
        return [Attempt.from_record(record) for record in records if record.get("user_id") == user_id]

    # --- Offline cache ---

    def _read_cache(self) -> dict[str, dict[str, Any]]:
        if self._cache_store is None:
            return {}
        raw = self._cache_store.get_item(PASSAGE_CACHE_KEY)
        if not raw:
            return {}
        try:
            loaded = json.loads(raw)
        except ValueError:
            logger.warning("Passage cache is corrupt; discarding it")
            return {}
        return loaded if isinstance(loaded, dict) else {}

    def _cache(self, passages: list[Passage]) -> None:
        if self._cache_store is None or not passages:
            return
        cached = self._read_cache()
        for passage in passages:
            cached[passage.id] = passage.to_record()
        self._write_cache(cached)

    def _drop_cached(self, passage_id: str) -> None:
        cached = self._read_cache()
        if cached.pop(passage_id, None) is not None:
            self._write_cache(cached)

    def _write_cache(self, cached: dict[str, dict[str, Any]]) -> None:
        if self._cache_store is None:
            return
        try:
            self._cache_store.set_item(PASSAGE_CACHE_KEY, json.dumps(cached))
        except OSError as exc:
            logger.warning("Could not update the offline passage cache: %s", exc)
