"""Validation of the passage authoring form and conversion into a Passage."""

from __future__ import annotations

from typing import Any, Iterable
from uuid import uuid4

from studysphere.constants.quiz_constants import OPTIONS_PER_QUESTION
from studysphere.core.errors import ValidationError
from studysphere.core.models import Difficulty, Passage, Question, Subject


def new_passage_id() -> str:
    return f"p_{uuid4().hex[:16]}"


def _text(snapshot: dict[str, Any], key: str) -> str:
    value = snapshot.get(key)
    return str(value).strip() if value is not None else ""


def _is_blank_question(item: dict[str, Any]) -> bool:
    options = item.get("options") or []
    return not str(item.get("text") or "").strip() and not any(str(option).strip() for option in options)


def _parse_time_limit(raw: Any) -> int | None:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return None
    return value if value >= 1 else None


def validate_form(snapshot: dict[str, Any]) -> list[str]:
    """Return every problem with ``snapshot``; an empty list means it can be saved."""
    errors: list[str] = []
    if not _text(snapshot, "title"):
        errors.append("Title is required")

    subject = _text(snapshot, "subject")
    if not subject:
        errors.append("Subject is required")
    elif subject.lower() not in {item.value.lower() for item in Subject}:
        errors.append(f"Unknown subject '{subject}'")

    difficulty = _text(snapshot, "difficulty")
    if not difficulty:
        errors.append("Difficulty is required")
    elif difficulty.lower() not in {item.value.lower() for item in Difficulty}:
        errors.append(f"Unknown difficulty '{difficulty}'")

    if _parse_time_limit(snapshot.get("time_limit")) is None:
        errors.append("Valid time limit is required")
    if not _text(snapshot, "passage_text"):
        errors.append("Passage text is required")

    questions = [item for item in snapshot.get("questions") or [] if not _is_blank_question(item)]
    if not questions:
        errors.append("At least one question is required")
    for number, item in enumerate(questions, start=1):
        if not str(item.get("text") or "").strip():
            errors.append(f"Question {number} text is required")
        options = [str(option).strip() for option in item.get("options") or []]
        if len(options) != OPTIONS_PER_QUESTION or any(not option for option in options):
            errors.append(f"Question {number} has empty options")
        elif len(set(options)) != OPTIONS_PER_QUESTION:
            errors.append(f"Question {number} has duplicate options")
        correct_index = item.get("correct_index")
        if not isinstance(correct_index, int) or not 0 <= correct_index < OPTIONS_PER_QUESTION:
            errors.append(f"Question {number} needs a correct answer")
    return errors


def build_passage(snapshot: dict[str, Any], passage_id: str | None = None) -> Passage:
    """Convert a validated form snapshot into an unsaved ``Passage``."""
    errors = validate_form(snapshot)
    if errors:
        raise ValidationError("Please fix the following errors", messages=errors)

    questions = [
        Question(text=str(item["text"]), options=list(item["options"]), correct_index=item["correct_index"])
        for item in snapshot.get("questions") or []
        if not _is_blank_question(item)
    ]
    tags = [tag.strip() for tag in _text(snapshot, "tags").split(",") if tag.strip()]
    return Passage(
        id=passage_id or new_passage_id(),
        title=_text(snapshot, "title"),
        subject=Subject.parse(_text(snapshot, "subject")),
        category=_text(snapshot, "category") or None,
        difficulty=Difficulty.parse(_text(snapshot, "difficulty")),
        time_limit_minutes=_parse_time_limit(snapshot.get("time_limit")) or 0,
        text=_text(snapshot, "passage_text"),
        source=_text(snapshot, "source") or None,
        tags=tags,
        questions=questions,
        is_published=bool(snapshot.get("is_published", False)),
    )


def known_categories(passages: Iterable[Passage], subject: Subject) -> list[str]:
    """Distinct, sorted categories already used by ``subject``."""
    return sorted({passage.category for passage in passages if passage.subject is subject and passage.category})
