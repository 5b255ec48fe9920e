"""State machine for one timed quiz attempt, from load to scored result."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import math
import time
from typing import Callable

from studysphere.constants.quiz_constants import OPTIONS_PER_QUESTION, TICK_INTERVAL_SECONDS
from studysphere.core.errors import (
    ConfirmationRequiredError,
    NotFoundError,
    StudySphereError,
    TransientError,
    ValidationError,
)
from studysphere.core.models import Attempt, Passage
from studysphere.core.scoring import BreakdownRow, score_answers
from studysphere.core.services.repository import StudyRepository
from studysphere.core.services.session import SessionContext
from studysphere.core.services.ticker import PeriodicTicker

logger = logging.getLogger(__name__)


class QuizState(str, Enum):
    LOADING = "loading"
    ACTIVE = "active"
    SUBMITTING = "submitting"
    FINISHED = "finished"
    CLOSED = "closed"


@dataclass(slots=True)
class QuizResult:
    correct: int
    total: int
    percentage: int
    time_taken_seconds: int
    breakdown: list[BreakdownRow]
    auto_submitted: bool
    attempt_id: str | None = None
    save_error: str | None = None


@dataclass(slots=True)
class QuizSnapshot:
    """Everything a view needs to draw the quiz; rendering is a function of this."""

    state: QuizState
    passage_id: str | None
    remaining_seconds: int
    time_limit_seconds: int
    answered: int
    total: int
    answers: dict[int, int] = field(default_factory=dict)


QuizListener = Callable[[QuizSnapshot], None]


class QuizEngine:
    """Runs the countdown, captures answers and scores one passage attempt."""

    def __init__(
        self,
        repository: StudyRepository,
        session: SessionContext,
        tick_interval: float = TICK_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._session = session
        self._clock = clock
        self._ticker = PeriodicTicker(tick_interval, self.tick, name="QuizCountdown")
        self._listeners: list[QuizListener] = []

        self._state = QuizState.LOADING
        self._passage: Passage | None = None
        self._answers: dict[int, int] = {}
        self._started_at: float | None = None
        self._time_limit_seconds: int = 0
        self._remaining_seconds: int = 0
        self._result: QuizResult | None = None

    # --- Read-only state ---

    @property
    def state(self) -> QuizState:
        return self._state

    @property
    def passage(self) -> Passage | None:
        return self._passage

    @property
    def result(self) -> QuizResult | None:
        return self._result

    @property
    def answers(self) -> dict[int, int]:
        return dict(self._answers)

    @property
    def ticking(self) -> bool:
        return self._ticker.running

    @property
    def remaining_seconds(self) -> int:
        if self._state is QuizState.ACTIVE and self._started_at is not None:
            elapsed = math.floor(self._clock() - self._started_at)
            return max(0, self._time_limit_seconds - elapsed)
        return self._remaining_seconds

    def snapshot(self) -> QuizSnapshot:
        return QuizSnapshot(
            state=self._state,
            passage_id=self._passage.id if self._passage else None,
            remaining_seconds=self.remaining_seconds,
            time_limit_seconds=self._time_limit_seconds,
            answered=len(self._answers),
            total=len(self._passage.questions) if self._passage else 0,
            answers=dict(self._answers),
        )

    def subscribe(self, listener: QuizListener) -> Callable[[], None]:
        """Register ``listener`` for state changes; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Transitions ---

    async def load(self, passage_id: str) -> Passage:
        """Fetch ``passage_id`` and start the quiz; offline falls back to the cache."""
        self._ticker.stop()
        self._state = QuizState.LOADING
        self._emit()
        try:
            passage = await self._repository.get_passage(passage_id)
        except TransientError:
            passage = self._repository.cached_passage(passage_id)
            if passage is None:
                raise
            logger.warning("Backend unavailable; using cached copy of passage %s", passage_id)
        if passage is None:
            raise NotFoundError("Passage not found")
        if self._state is QuizState.CLOSED:
            # Closed while the passage was loading.
            return passage
        self.start(passage)
        return passage

    def start(self, passage: Passage) -> None:
        if not passage.questions:
            raise ValidationError("A quiz needs at least one question.")
        if passage.time_limit_minutes <= 0:
            raise ValidationError("A quiz needs a positive time limit.")
        self._ticker.stop()
        self._passage = passage
        self._time_limit_seconds = passage.time_limit_seconds
        self._result = None
        self._begin()
        logger.info("Started quiz for passage %s (%ss)", passage.id, self._time_limit_seconds)

    def select_answer(self, question_index: int, option_index: int) -> bool:
        """Record an answer; returns False (and does nothing) unless the quiz is active."""
        if self._state is not QuizState.ACTIVE or self._passage is None:
            return False
        if not 0 <= question_index < len(self._passage.questions):
            raise ValidationError(f"Question index {question_index} out of range")
        if not 0 <= option_index < OPTIONS_PER_QUESTION:
            raise ValidationError(f"Option index {option_index} out of range")
        self._answers[question_index] = option_index
        self._emit()
        return True

    async def tick(self) -> None:
        if self._state is not QuizState.ACTIVE:
            return
        self._remaining_seconds = self.remaining_seconds
        self._emit()
        if self._remaining_seconds == 0:
            await self.submit(auto=True)

    def needs_confirmation(self) -> bool:
        return self._passage is not None and len(self._answers) < len(self._passage.questions)

    async def submit(self, auto: bool = False, confirmed: bool = False) -> QuizResult | None:
        """Score the attempt and save it; repeated calls return the first result.

        A manual submission with unanswered questions needs ``confirmed=True``;
        otherwise ``ConfirmationRequiredError`` is raised and the quiz keeps
        running.
        """
        if self._state is not QuizState.ACTIVE or self._passage is None:
            return self._result
        if not auto and not confirmed and self.needs_confirmation():
            raise ConfirmationRequiredError(len(self._answers), len(self._passage.questions))

        self._ticker.stop()
        self._remaining_seconds = self.remaining_seconds
        self._state = QuizState.SUBMITTING
        self._emit()

        elapsed = math.floor(self._clock() - (self._started_at or self._clock()))
        if auto:
            elapsed = min(elapsed, self._time_limit_seconds)
        answers = dict(self._answers)
        summary = score_answers(self._passage, answers)
        result = QuizResult(
            correct=summary.correct,
            total=summary.total,
            percentage=summary.percentage,
            time_taken_seconds=max(0, elapsed),
            breakdown=summary.breakdown,
            auto_submitted=auto,
        )
        self._result = result
        self._state = QuizState.FINISHED
        self._emit()
        logger.info(
            "Quiz for passage %s finished: %s/%s (%s%%)%s",
            self._passage.id,
            summary.correct,
            summary.total,
            summary.percentage,
            " [time expired]" if auto else "",
        )

        await self._save(self._passage, answers, result)
        return result

    def retake(self) -> bool:
        if self._state is not QuizState.FINISHED or self._passage is None:
            return False
        self._result = None
        self._begin()
        logger.info("Retaking quiz for passage %s", self._passage.id)
        return True

    def close(self) -> None:
        """Stop the countdown; called whenever the quiz view goes away.

        An unfinished quiz becomes ``CLOSED`` with its clock frozen; a
        finished one keeps its result.
        """
        self._ticker.stop()
        if self._state in (QuizState.LOADING, QuizState.ACTIVE):
            self._remaining_seconds = self.remaining_seconds
            self._state = QuizState.CLOSED
            self._emit()
        self._listeners.clear()

    async def __aenter__(self) -> "QuizEngine":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    # --- Internals ---

    def _begin(self) -> None:
        self._answers = {}
        self._started_at = self._clock()
        self._remaining_seconds = self._time_limit_seconds
        self._state = QuizState.ACTIVE
        self._ticker.start()
        self._emit()

    async def _save(self, passage: Passage, answers: dict[int, int], result: QuizResult) -> None:
        identity = self._session.current_identity()
        if identity is None:
            result.save_error = "Sign in to save your results."
            logger.warning("Quiz result for passage %s not saved: no signed-in user", passage.id)
            return
        attempt = Attempt(
            id=None,
            user_id=identity.id,
            passage_id=passage.id,
            subject=passage.subject,
            score=result.percentage,
            answers=answers,
            time_taken_seconds=result.time_taken_seconds,
            total_questions=result.total,
            correct_count=result.correct,
        )
        try:
            saved = await self._repository.save_attempt(attempt)
        except StudySphereError as exc:
            result.save_error = exc.message
            logger.warning("Failed to save quiz results for passage %s: %s", passage.id, exc.message)
            return
        result.attempt_id = saved.id
        self._emit()

    def _emit(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)
