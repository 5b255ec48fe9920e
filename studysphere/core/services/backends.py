"""Document persistence backends: Supabase tables or the local key-value store."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from functools import partial
import json
import logging
from typing import Any, Callable, Iterable
from uuid import uuid4

import httpx
from postgrest.exceptions import APIError
from supabase import Client

from studysphere.constants.storage_constants import COLLECTION_KEY_TEMPLATE
from studysphere.core.errors import NotFoundError, TransientError
from studysphere.core.models import utcnow
from studysphere.core.query import Query, apply_query
from studysphere.core.storage.key_value import KeyValueStore

logger = logging.getLogger(__name__)

Record = dict[str, Any]


class DocumentBackend(ABC):
    """Create/read/update/delete documents by id and run typed queries."""

    #: True when ``query`` is planned by the backend itself.
    supports_server_query: bool = False

    @abstractmethod
    async def create(self, collection: str, data: Record, timestamp_fields: Iterable[str] = ()) -> Record:
        """Insert ``data``; the returned record carries its id and timestamps."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Record | None: ...

    @abstractmethod
    async def update(
        self, collection: str, doc_id: str, changes: Record, timestamp_fields: Iterable[str] = ()
    ) -> Record:
        """Apply ``changes``; raises ``NotFoundError`` for unknown ids."""

    @abstractmethod
    async def upsert(self, collection: str, data: Record) -> Record: ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None: ...

    @abstractmethod
    async def query(self, collection: str, query: Query) -> list[Record]: ...


class LocalDocumentBackend(DocumentBackend):
    """Collections kept as JSON objects keyed by id in a ``KeyValueStore``.

    There is no query planner here, so queries are evaluated client-side.
    """

    supports_server_query = False

    def __init__(self, store: KeyValueStore, clock: Callable = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def create(self, collection: str, data: Record, timestamp_fields: Iterable[str] = ()) -> Record:
        documents = self._load(collection)
        record = dict(data)
        record["id"] = record.get("id") or uuid4().hex
        stamp = self._clock().isoformat()
        for field_name in timestamp_fields:
            record[field_name] = stamp
        documents[record["id"]] = record
        self._save(collection, documents)
        return dict(record)

    async def get(self, collection: str, doc_id: str) -> Record | None:
        record = self._load(collection).get(doc_id)
        return dict(record) if record is not None else None

    async def update(
        self, collection: str, doc_id: str, changes: Record, timestamp_fields: Iterable[str] = ()
    ) -> Record:
        documents = self._load(collection)
        if doc_id not in documents:
            raise NotFoundError(f"No document '{doc_id}' in {collection}.")
        record = {**documents[doc_id], **changes, "id": doc_id}
        stamp = self._clock().isoformat()
        for field_name in timestamp_fields:
            record[field_name] = stamp
        documents[doc_id] = record
        self._save(collection, documents)
        return dict(record)

    async def upsert(self, collection: str, data: Record) -> Record:
        documents = self._load(collection)
        record = dict(data)
        record["id"] = record.get("id") or uuid4().hex
        documents[record["id"]] = record
        self._save(collection, documents)
        return dict(record)

    async def delete(self, collection: str, doc_id: str) -> None:
        documents = self._load(collection)
        if documents.pop(doc_id, None) is not None:
            self._save(collection, documents)

    async def query(self, collection: str, query: Query) -> list[Record]:
        return [dict(record) for record in apply_query(self._load(collection).values(), query)]

    def _load(self, collection: str) -> dict[str, Record]:
        try:
            raw = self._store.get_item(COLLECTION_KEY_TEMPLATE.format(collection=collection))
        except OSError as exc:
            raise TransientError(f"Local storage is unavailable: {exc}") from exc
        if not raw:
            return {}
        try:
            loaded = json.loads(raw)
        except ValueError:
            logger.warning("Stored %s collection is corrupt; treating it as empty", collection)
            return {}
        return loaded if isinstance(loaded, dict) else {}

    def _save(self, collection: str, documents: dict[str, Record]) -> None:
        try:
            self._store.set_item(COLLECTION_KEY_TEMPLATE.format(collection=collection), json.dumps(documents))
        except OSError as exc:
            logger.error("Failed to write %s collection: %s", collection, exc)
            raise TransientError(f"Local storage is unavailable: {exc}") from exc


class SupabaseDocumentBackend(DocumentBackend):
    """Tables in a Supabase project, one table per collection.

    Timestamp columns named in ``timestamp_fields`` are left to the column
    default (``now()``) on insert. The supabase client is synchronous, so
    every call runs in the default executor.
    """

    supports_server_query = True

    def __init__(self, client: Client) -> None:
        self._client = client

    async def create(self, collection: str, data: Record, timestamp_fields: Iterable[str] = ()) -> Record:
        skipped = set(timestamp_fields)
        payload = {key: value for key, value in data.items() if key not in skipped}
        if not payload.get("id"):
            payload.pop("id", None)
        rows = await self._execute(self._client.table(collection).insert(payload))
        if not rows:
            raise TransientError(f"Insert into {collection} returned no rows.")
        return rows[0]

    async def get(self, collection: str, doc_id: str) -> Record | None:
        rows = await self._execute(self._client.table(collection).select("*").eq("id", doc_id).limit(1))
        return rows[0] if rows else None

    async def update(
        self, collection: str, doc_id: str, changes: Record, timestamp_fields: Iterable[str] = ()
    ) -> Record:
        payload = {key: value for key, value in changes.items() if key != "id"}
        stamp = utcnow().isoformat()
        for field_name in timestamp_fields:
            payload[field_name] = stamp
        rows = await self._execute(self._client.table(collection).update(payload).eq("id", doc_id))
        if not rows:
            raise NotFoundError(f"No document '{doc_id}' in {collection}.")
        return rows[0]

    async def upsert(self, collection: str, data: Record) -> Record:
        rows = await self._execute(self._client.table(collection).upsert(data))
        if not rows:
            raise TransientError(f"Upsert into {collection} returned no rows.")
        return rows[0]

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._execute(self._client.table(collection).delete().eq("id", doc_id))

    async def query(self, collection: str, query: Query) -> list[Record]:
        request = self._client.table(collection).select("*")
        for item in query.filters:
            request = request.eq(item.field, item.value)
        for item in query.ranges:
            value = item.value.isoformat() if hasattr(item.value, "isoformat") else item.value
            request = request.gte(item.field, value) if item.op == "gte" else request.lte(item.field, value)
        if query.order_by is not None:
            request = request.order(query.order_by.field, desc=query.order_by.descending)
        request = request.order("id")
        if query.limit is not None:
            request = request.limit(query.limit)
        return await self._execute(request)

    async def _execute(self, request: Any) -> list[Record]:
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, partial(request.execute))
        except APIError as exc:
            logger.error("Supabase request failed: %s", exc)
            raise TransientError(f"Backend request failed: {exc.message or exc}") from exc
        except httpx.HTTPError as exc:
            logger.error("Supabase unreachable: %s", exc)
            raise TransientError("Network error. Please check your connection.") from exc
        return list(response.data or [])
