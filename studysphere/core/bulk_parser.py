"""Parser for questions pasted into the authoring form as plain text.

Format (one item per line, blank lines ignored):

    Question: What organelle produces ATP?
    A) Nucleus
    B) Mitochondria*
    C) Ribosome
    D) Golgi apparatus

A ``*`` anywhere on an option line marks the correct option. Questions
without a prompt, without exactly four options or without exactly one
marked option are dropped rather than reported.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re

from studysphere.constants.quiz_constants import OPTIONS_PER_QUESTION
from studysphere.core.errors import ValidationError
from studysphere.core.models import Question

_QUESTION_MARKER = "question:"
_OPTION_PATTERN = re.compile(r"^[A-D]\)")
_CORRECT_MARKER = "*"


@dataclass(slots=True)
class _PendingQuestion:
    text: str
    options: list[str] = field(default_factory=list)
    marked: list[int] = field(default_factory=list)


def parse_bulk_questions(raw_text: str) -> list[Question]:
    """Parse ``raw_text`` into questions, silently dropping invalid blocks."""
    pending: list[_PendingQuestion] = []
    current: _PendingQuestion | None = None

    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        if line.lower().startswith(_QUESTION_MARKER):
            current = _PendingQuestion(text=line[len(_QUESTION_MARKER):].strip())
            pending.append(current)
            continue

        if current is not None and _OPTION_PATTERN.match(line):
            if _CORRECT_MARKER in line:
                current.marked.append(len(current.options))
            current.options.append(line[2:].replace(_CORRECT_MARKER, "").strip())

    questions: list[Question] = []
    for candidate in pending:
        question = _build_question(candidate)
        if question is not None:
            questions.append(question)
    return questions


def _build_question(candidate: _PendingQuestion) -> Question | None:
    if not candidate.text:
        return None
    if len(candidate.options) != OPTIONS_PER_QUESTION or any(not option for option in candidate.options):
        return None
    if len(candidate.marked) != 1:
        return None
    try:
        return Question(text=candidate.text, options=candidate.options, correct_index=candidate.marked[0])
    except ValidationError:
        return None
