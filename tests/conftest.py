"""Shared fixtures: an in-memory local stack and passage factories."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import pytest

from studysphere.constants.storage_constants import PASSAGES_COLLECTION, PROFILES_COLLECTION
from studysphere.core.models import Difficulty, Identity, Passage, Question, Subject
from studysphere.core.services.backends import LocalDocumentBackend
from studysphere.core.services.identity import LocalIdentityProvider
from studysphere.core.services.repository import StudyRepository
from studysphere.core.services.session import SessionContext
from studysphere.core.storage.key_value import InMemoryKeyValueStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingDiskStore(InMemoryKeyValueStore):
    """In-memory store whose writes fail like a full disk while ``broken`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.broken = False

    def set_item(self, key: str, value: str) -> None:
        if self.broken:
            raise OSError(28, "No space left on device")
        super().set_item(key, value)


def build_question(number: int, correct_index: int = 0) -> Question:
    return Question(
        text=f"Question {number}?",
        options=[f"Q{number} option {letter}" for letter in "ABCD"],
        correct_index=correct_index,
    )


def build_passage(
    passage_id: str = "p_sample",
    question_count: int = 3,
    time_limit_minutes: int = 1,
    **overrides: Any,
) -> Passage:
    fields: dict[str, Any] = {
        "id": passage_id,
        "title": "Cell Biology Basics",
        "subject": Subject.BIOLOGY,
        "difficulty": Difficulty.EASY,
        "time_limit_minutes": time_limit_minutes,
        "text": "Cells are the basic unit of life.",
        "questions": [build_question(number, correct_index=number % 4) for number in range(question_count)],
        "is_published": True,
    }
    fields.update(overrides)
    return Passage(**fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def backend(store: InMemoryKeyValueStore) -> LocalDocumentBackend:
    return LocalDocumentBackend(store)


@pytest.fixture
def provider(store: InMemoryKeyValueStore) -> LocalIdentityProvider:
    return LocalIdentityProvider(store)


@pytest.fixture
def session(provider, backend, store) -> SessionContext:
    return SessionContext(provider, profiles=backend, store=store)


@pytest.fixture
def repository(backend, session, store) -> StudyRepository:
    return StudyRepository(backend, session, cache_store=store)


@pytest.fixture
def sign_up(session, backend) -> Callable[..., Awaitable[Identity]]:
    """Create and sign in an account, optionally promoted to admin."""

    async def _sign_up(email: str = "student@example.com", admin: bool = False) -> Identity:
        identity = await session.sign_up(email, "secret123", email.split("@")[0])
        if admin:
            await backend.update(PROFILES_COLLECTION, identity.id, {"role": "admin"})
            session.invalidate_role()
        return identity

    return _sign_up


@pytest.fixture
def seed_passage(backend) -> Callable[[Passage], Awaitable[None]]:
    """Write a passage straight into the backend, bypassing the admin gate."""

    async def _seed(passage: Passage) -> None:
        record = passage.to_record()
        record["created_at"] = record["created_at"] or "2024-01-01T00:00:00+00:00"
        await backend.upsert(PASSAGES_COLLECTION, record)

    return _seed
