"""Domain models for StudySphere."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from studysphere.constants.quiz_constants import DEFAULT_PREFERRED_TIME_LIMIT_MINUTES, OPTIONS_PER_QUESTION
from studysphere.core.errors import ValidationError


class Subject(str, Enum):
    BIOLOGY = "Biology"
    CHEMISTRY = "Chemistry"
    PHYSICS = "Physics"
    GEOLOGY = "Geology"
    ENGLISH = "English"

    @classmethod
    def parse(cls, value: str) -> "Subject":
        """Accept either the display name or its lowercase form."""
        for subject in cls:
            if subject.value.lower() == str(value).strip().lower():
                return subject
        raise ValidationError(f"Unknown subject '{value}'.")


class Difficulty(str, Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"

    @property
    def rank(self) -> int:
        return _DIFFICULTY_ORDER.index(self)

    @classmethod
    def parse(cls, value: str) -> "Difficulty":
        for difficulty in cls:
            if difficulty.value.lower() == str(value).strip().lower():
                return difficulty
        raise ValidationError(f"Unknown difficulty '{value}'.")


_DIFFICULTY_ORDER = [Difficulty.EASY, Difficulty.MEDIUM, Difficulty.HARD]


class Role(str, Enum):
    STUDENT = "student"
    ADMIN = "admin"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO timestamp (or pass through a datetime) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class Question:
    """Multiple-choice question with exactly four options, owned by a passage."""

    text: str
    options: list[str]
    correct_index: int

    def __post_init__(self) -> None:
        self.text = self.text.strip()
        if not self.text:
            raise ValidationError("Question text must not be empty.")
        if len(self.options) != OPTIONS_PER_QUESTION:
            raise ValidationError("Each question must have exactly four options.")
        self.options = [option.strip() for option in self.options]
        if any(not option for option in self.options):
            raise ValidationError("Option text cannot be empty.")
        if len(set(self.options)) != OPTIONS_PER_QUESTION:
            raise ValidationError("Options must be distinct.")
        if not isinstance(self.correct_index, int) or not 0 <= self.correct_index < OPTIONS_PER_QUESTION:
            raise ValidationError("Correct option index must be between 0 and 3.")

    def to_record(self) -> dict[str, Any]:
        return {"text": self.text, "options": list(self.options), "correct_index": self.correct_index}

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Question":
        return cls(
            text=str(record.get("text", "")),
            options=[str(option) for option in record.get("options", [])],
            correct_index=int(record.get("correct_index", -1)),
        )


@dataclass(slots=True)
class Passage:
    """Reading-comprehension passage and its questions."""

    id: str
    title: str
    subject: Subject
    difficulty: Difficulty
    time_limit_minutes: int
    text: str
    questions: list[Question]
    category: str | None = None
    source: str | None = None
    tags: list[str] = field(default_factory=list)
    is_published: bool = False
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.title.strip():
            raise ValidationError("A passage needs a title.")
        if not self.questions:
            raise ValidationError("A passage needs at least one question.")
        if not isinstance(self.time_limit_minutes, int) or self.time_limit_minutes <= 0:
            raise ValidationError("Time limit must be a positive number of minutes.")

    @property
    def time_limit_seconds(self) -> int:
        return self.time_limit_minutes * 60

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "subject": self.subject.value,
            "category": self.category,
            "difficulty": self.difficulty.value,
            "time_limit_minutes": self.time_limit_minutes,
            "text": self.text,
            "source": self.source,
            "tags": list(self.tags),
            "questions": [question.to_record() for question in self.questions],
            "is_published": self.is_published,
            "created_by": self.created_by,
            "created_at": _format_timestamp(self.created_at),
            "updated_at": _format_timestamp(self.updated_at),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Passage":
        return cls(
            id=str(record["id"]),
            title=str(record.get("title", "")),
            subject=Subject.parse(record["subject"]),
            category=record.get("category") or None,
            difficulty=Difficulty.parse(record.get("difficulty", Difficulty.MEDIUM.value)),
            time_limit_minutes=int(record.get("time_limit_minutes", 0)),
            text=str(record.get("text", "")),
            source=record.get("source") or None,
            tags=[str(tag) for tag in record.get("tags") or []],
            questions=[Question.from_record(item) for item in record.get("questions") or []],
            is_published=bool(record.get("is_published", False)),
            created_by=record.get("created_by"),
            created_at=parse_timestamp(record.get("created_at")),
            updated_at=parse_timestamp(record.get("updated_at")),
        )


@dataclass(slots=True)
class Attempt:
    """Persisted record of one completed quiz run."""

    id: str | None
    user_id: str
    passage_id: str
    subject: Subject
    score: int
    answers: dict[int, int]
    time_taken_seconds: int
    total_questions: int
    correct_count: int
    attempted_at: datetime | None = None
    version: int = 1

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "passage_id": self.passage_id,
            "subject": self.subject.value,
            "score": self.score,
            # Document stores only accept string keys.
            "answers": {str(index): option for index, option in self.answers.items()},
            "time_taken_seconds": self.time_taken_seconds,
            "total_questions": self.total_questions,
            "correct_count": self.correct_count,
            "attempted_at": _format_timestamp(self.attempted_at),
            "version": self.version,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Attempt":
        return cls(
            id=record.get("id"),
            user_id=str(record["user_id"]),
            passage_id=str(record["passage_id"]),
            subject=Subject.parse(record["subject"]),
            score=int(record.get("score", 0)),
            answers={int(index): int(option) for index, option in (record.get("answers") or {}).items()},
            time_taken_seconds=int(record.get("time_taken_seconds", 0)),
            total_questions=int(record.get("total_questions", 0)),
            correct_count=int(record.get("correct_count", 0)),
            attempted_at=parse_timestamp(record.get("attempted_at")),
            version=int(record.get("version", 1)),
        )


@dataclass(slots=True)
class Identity:
    """Signed-in user as reported by the identity provider."""

    id: str
    email: str
    display_name: str | None = None
    email_verified: bool = False
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.display_name or self.email.split("@")[0]


@dataclass(slots=True)
class Preferences:
    """Study preferences kept on the user's profile document."""

    default_time_limit_minutes: int = DEFAULT_PREFERRED_TIME_LIMIT_MINUTES
    preferred_difficulty: Difficulty | None = None
    email_notifications: bool = False
    auto_submit: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.default_time_limit_minutes, int) or self.default_time_limit_minutes <= 0:
            raise ValidationError("Default time limit must be a positive number of minutes.")

    def to_record(self) -> dict[str, Any]:
        return {
            "default_time_limit_minutes": self.default_time_limit_minutes,
            "preferred_difficulty": self.preferred_difficulty.value if self.preferred_difficulty else None,
            "email_notifications": self.email_notifications,
            "auto_submit": self.auto_submit,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any] | None) -> "Preferences":
        record = record or {}
        difficulty = record.get("preferred_difficulty")
        return cls(
            default_time_limit_minutes=int(
                record.get("default_time_limit_minutes") or DEFAULT_PREFERRED_TIME_LIMIT_MINUTES
            ),
            preferred_difficulty=Difficulty.parse(difficulty) if difficulty else None,
            email_notifications=bool(record.get("email_notifications", False)),
            auto_submit=record.get("auto_submit") is not False,
        )


@dataclass(slots=True)
class Profile:
    id: str
    email: str
    display_name: str
    role: Role = Role.STUDENT
    target_exam: str | None = None
    preferences: Preferences = field(default_factory=Preferences)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Profile":
        try:
            role = Role(record.get("role") or Role.STUDENT.value)
        except ValueError:
            role = Role.STUDENT
        return cls(
            id=str(record["id"]),
            email=str(record.get("email", "")),
            display_name=str(record.get("display_name") or ""),
            role=role,
            target_exam=record.get("target_exam") or None,
            preferences=Preferences.from_record(record.get("preferences")),
        )
