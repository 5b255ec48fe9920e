"""Aggregate statistics over attempts and passages for the dashboards."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Sequence

from studysphere.constants.quiz_constants import SCORE_HISTORY_LENGTH
from studysphere.core.models import Attempt, Passage, Subject, utcnow


def _rounded_mean(values: Sequence[int]) -> int:
    """Mean of non-negative integers, rounded half up."""
    if not values:
        return 0
    return (2 * sum(values) + len(values)) // (2 * len(values))


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _newest_first(attempts: Iterable[Attempt]) -> list[Attempt]:
    return sorted(attempts, key=lambda a: a.attempted_at or _EPOCH, reverse=True)


@dataclass(slots=True)
class SubjectStats:
    attempts: int = 0
    average_score: int = 0
    best_score: int = 0
    recent_score: int = 0


@dataclass(slots=True)
class UserStats:
    total_attempts: int
    average_score: int
    best_score: int
    recent_score: int
    total_time_minutes: int
    subject_stats: dict[Subject, SubjectStats] = field(default_factory=dict)
    score_history: list[Attempt] = field(default_factory=list)


@dataclass(slots=True)
class DailyAverage:
    day: date
    average_score: int
    attempt_count: int


@dataclass(slots=True)
class PerformanceTrend:
    daily: list[DailyAverage]
    total_attempts: int
    average_score: int


@dataclass(slots=True)
class PassageStats:
    total: int
    published: int
    drafts: int
    by_subject: dict[Subject, int]


@dataclass(slots=True)
class Achievement:
    id: str
    title: str
    description: str
    unlocked: bool
    progress: str


def _subject_stats(attempts: list[Attempt]) -> SubjectStats:
    if not attempts:
        return SubjectStats()
    scores = [attempt.score for attempt in attempts]
    return SubjectStats(
        attempts=len(attempts),
        average_score=_rounded_mean(scores),
        best_score=max(scores),
        recent_score=attempts[0].score,
    )


def user_stats(attempts: Iterable[Attempt]) -> UserStats:
    """Totals, per-subject figures and the recent score history (oldest first)."""
    ordered = _newest_first(attempts)
    if not ordered:
        return UserStats(
            total_attempts=0,
            average_score=0,
            best_score=0,
            recent_score=0,
            total_time_minutes=0,
            subject_stats={subject: SubjectStats() for subject in Subject},
        )
    scores = [attempt.score for attempt in ordered]
    total_seconds = sum(attempt.time_taken_seconds for attempt in ordered)
    return UserStats(
        total_attempts=len(ordered),
        average_score=_rounded_mean(scores),
        best_score=max(scores),
        recent_score=ordered[0].score,
        total_time_minutes=(total_seconds + 30) // 60,
        subject_stats={
            subject: _subject_stats([attempt for attempt in ordered if attempt.subject is subject])
            for subject in Subject
        },
        score_history=list(reversed(ordered[:SCORE_HISTORY_LENGTH])),
    )


def performance_trends(attempts: Iterable[Attempt], days: int = 30, now: datetime | None = None) -> PerformanceTrend:
    """Daily average scores over the last ``days`` days, oldest day first."""
    if days <= 0:
        raise ValueError("days must be positive")
    cutoff = (now or utcnow()) - timedelta(days=days)
    recent = [a for a in attempts if a.attempted_at is not None and a.attempted_at >= cutoff]
    by_day: dict[date, list[int]] = {}
    for attempt in recent:
        by_day.setdefault(attempt.attempted_at.date(), []).append(attempt.score)
    daily = [
        DailyAverage(day=day, average_score=_rounded_mean(scores), attempt_count=len(scores))
        for day, scores in sorted(by_day.items())
    ]
    return PerformanceTrend(
        daily=daily,
        total_attempts=len(recent),
        average_score=_rounded_mean([attempt.score for attempt in recent]),
    )


def passage_stats(passages: Iterable[Passage]) -> PassageStats:
    items = list(passages)
    published = sum(1 for passage in items if passage.is_published)
    by_subject = {subject: 0 for subject in Subject}
    for passage in items:
        by_subject[passage.subject] += 1
    return PassageStats(total=len(items), published=published, drafts=len(items) - published, by_subject=by_subject)


def study_streak(attempts: Iterable[Attempt], today: date | None = None) -> int:
    """Consecutive days with at least one attempt, ending today or yesterday."""
    days = {attempt.attempted_at.date() for attempt in attempts if attempt.attempted_at is not None}
    if not days:
        return 0
    current = today or utcnow().date()
    if current not in days:
        current -= timedelta(days=1)
    streak = 0
    while current in days:
        streak += 1
        current -= timedelta(days=1)
    return streak


def achievements(attempts: Iterable[Attempt], today: date | None = None) -> list[Achievement]:
    items = list(attempts)
    total = len(items)
    subjects_done = len({attempt.subject for attempt in items})
    streak = study_streak(items, today)
    return [
        Achievement(
            id="first_quiz",
            title="Getting Started",
            description="Complete your first quiz",
            unlocked=total >= 1,
            progress="Complete!" if total >= 1 else "0/1 quizzes",
        ),
        Achievement(
            id="quiz_master",
            title="Quiz Master",
            description="Complete 10 quizzes",
            unlocked=total >= 10,
            progress=f"{min(total, 10)}/10 quizzes",
        ),
        Achievement(
            id="perfect_score",
            title="Perfect Score",
            description="Get 100% on any quiz",
            unlocked=any(attempt.score == 100 for attempt in items),
            progress="Get 100% on a quiz",
        ),
        Achievement(
            id="study_streak",
            title="Consistent Learner",
            description="Study for 7 days in a row",
            unlocked=streak >= 7,
            progress=f"{min(streak, 7)}/7 days",
        ),
        Achievement(
            id="all_subjects",
            title="Well Rounded",
            description="Complete quizzes in all 5 subjects",
            unlocked=subjects_done >= len(Subject),
            progress=f"{subjects_done}/{len(Subject)} subjects",
        ),
        Achievement(
            id="speed_demon",
            title="Speed Demon",
            description="Complete a quiz in under 5 minutes",
            unlocked=any(attempt.time_taken_seconds < 300 for attempt in items),
            progress="Complete a quiz quickly",
        ),
    ]


def chart_points(history: Sequence[Attempt]) -> list[dict[str, object]]:
    """``{x, y}`` points for the plotting library; x is the attempt timestamp."""
    return [
        {"x": attempt.attempted_at.isoformat() if attempt.attempted_at else None, "y": attempt.score}
        for attempt in history
    ]
