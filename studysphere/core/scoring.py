"""Score computation for a finished quiz attempt."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from studysphere.constants.quiz_constants import NOT_ANSWERED
from studysphere.core.models import Passage


@dataclass(slots=True)
class BreakdownRow:
    """Per-question outcome shown on the results screen."""

    question: str
    selected: str
    correct_answer: str
    is_correct: bool


@dataclass(slots=True)
class ScoreSummary:
    correct: int
    total: int
    percentage: int
    breakdown: list[BreakdownRow]


def percentage_score(correct: int, total: int) -> int:
    """Return ``round(100 * correct / total)`` rounding halves up."""
    if total <= 0:
        raise ValueError("Total must be positive.")
    return (200 * correct + total) // (2 * total)


def score_answers(passage: Passage, answers: Mapping[int, int]) -> ScoreSummary:
    """Score ``answers`` (question index -> option index) against ``passage``.

    Absent answers are never correct. The result depends only on the inputs.
    """
    breakdown: list[BreakdownRow] = []
    correct = 0
    for index, question in enumerate(passage.questions):
        selected_index = answers.get(index)
        is_correct = selected_index is not None and selected_index == question.correct_index
        if is_correct:
            correct += 1
        if selected_index is not None and 0 <= selected_index < len(question.options):
            selected_text = question.options[selected_index]
        else:
            selected_text = NOT_ANSWERED
        breakdown.append(
            BreakdownRow(
                question=question.text,
                selected=selected_text,
                correct_answer=question.options[question.correct_index],
                is_correct=is_correct,
            )
        )

    total = len(passage.questions)
    return ScoreSummary(
        correct=correct,
        total=total,
        percentage=percentage_score(correct, total),
        breakdown=breakdown,
    )
