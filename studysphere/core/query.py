"""Typed document queries and their client-side evaluation.

A ``Query`` is a backend-neutral description (equality filters, range
filters, one sort field, a result limit). Backends with a native query
planner translate it; the others hand their records to ``apply_query``.
Both paths order ties by ``id`` so they return the same sequence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Literal

from studysphere.core.models import parse_timestamp

TIMESTAMP_FIELDS = frozenset({"created_at", "updated_at", "attempted_at"})


@dataclass(frozen=True, slots=True)
class Filter:
    field: str
    value: Any


@dataclass(frozen=True, slots=True)
class RangeFilter:
    field: str
    op: Literal["gte", "lte"]
    value: Any


@dataclass(frozen=True, slots=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True, slots=True)
class Query:
    filters: tuple[Filter, ...] = ()
    ranges: tuple[RangeFilter, ...] = ()
    order_by: OrderBy | None = None
    limit: int | None = None

    def where(self, field_name: str, value: Any) -> "Query":
        return Query(self.filters + (Filter(field_name, value),), self.ranges, self.order_by, self.limit)

    def where_range(self, field_name: str, op: Literal["gte", "lte"], value: Any) -> "Query":
        return Query(self.filters, self.ranges + (RangeFilter(field_name, op, value),), self.order_by, self.limit)

    def ordered(self, field_name: str, descending: bool = False) -> "Query":
        return Query(self.filters, self.ranges, OrderBy(field_name, descending), self.limit)

    def limited(self, count: int | None) -> "Query":
        if count is not None and count < 0:
            raise ValueError("Limit must not be negative.")
        return Query(self.filters, self.ranges, self.order_by, count)


def _comparable(field_name: str, value: Any) -> Any:
    if field_name in TIMESTAMP_FIELDS and not isinstance(value, datetime):
        return parse_timestamp(value)
    return value


def _sort_key(field_name: str, record: dict[str, Any]) -> tuple[bool, Any]:
    # Nulls sort last ascending and first descending, as in Postgres.
    value = _comparable(field_name, record.get(field_name))
    return (value is None, value)


def _matches(record: dict[str, Any], query: Query) -> bool:
    for item in query.filters:
        if record.get(item.field) != item.value:
            return False
    for item in query.ranges:
        actual = _comparable(item.field, record.get(item.field))
        bound = _comparable(item.field, item.value)
        if actual is None:
            return False
        if item.op == "gte" and actual < bound:
            return False
        if item.op == "lte" and actual > bound:
            return False
    return True


def apply_query(records: Iterable[dict[str, Any]], query: Query) -> list[dict[str, Any]]:
    """Filter, sort and limit ``records`` exactly as a server-side query would."""
    selected = [record for record in records if _matches(record, query)]
    # Secondary key first; Python's sort is stable.
    selected.sort(key=lambda record: str(record.get("id", "")))
    if query.order_by is not None:
        order = query.order_by
        selected.sort(key=lambda record: _sort_key(order.field, record), reverse=order.descending)
    if query.limit is not None:
        selected = selected[: query.limit]
    return selected
