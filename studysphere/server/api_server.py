"""FastAPI server that exposes the StudySphere endpoints to the browser."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
import logging
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from studysphere.constants.about import (
    APP_ABOUT_TEXT,
    APP_LICENSE,
    APP_NAME,
    APP_VERSION,
    BULK_PASTE_HELP_TEXT,
)
from studysphere.constants.quiz_constants import DEFAULT_PREFERRED_TIME_LIMIT_MINUTES, LOW_TIME_WARNING_SECONDS
from studysphere.core.config import Settings
from studysphere.core.errors import (
    AuthenticationError,
    ConfirmationRequiredError,
    NotFoundError,
    PermissionDeniedError,
    StudySphereError,
    TransientError,
    ValidationError,
)
from studysphere.core.markdown_renderer import renderer
from studysphere.core.models import Attempt, Difficulty, Identity, Passage, Preferences, Profile, Subject
from studysphere.core.services.quiz_engine import QuizEngine, QuizResult, QuizState
from studysphere.core.services.repository import AttemptFilter, PassageFilter
from studysphere.core.services.statistics import chart_points
from studysphere.core.study_manager import StudyManager

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[StudySphereError], int]] = [
    (ConfirmationRequiredError, 409),
    (ValidationError, 422),
    (AuthenticationError, 401),
    (PermissionDeniedError, 403),
    (NotFoundError, 404),
    (TransientError, 503),
]


def status_for_error(error: StudySphereError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


# --- Payload schemas ---


class CredentialsPayload(BaseModel):
    email: str
    password: str
    display_name: str | None = None


class EmailPayload(BaseModel):
    email: str


class QuestionForm(BaseModel):
    text: str = ""
    options: list[str] = Field(default_factory=list)
    correct_index: int | None = None


class PassageForm(BaseModel):
    """Authoring form as the browser submits it; validated server-side."""

    title: str = ""
    source: str | None = None
    subject: str = ""
    category: str | None = None
    difficulty: str = ""
    time_limit: str | int | None = None
    tags: str = ""
    passage_text: str = ""
    is_published: bool = False
    questions: list[QuestionForm] = Field(default_factory=list)


class PublishFormPayload(PassageForm):
    passage_id: str | None = None


class PublishPayload(BaseModel):
    is_published: bool


class BulkParsePayload(BaseModel):
    raw_text: str


class AnswerPayload(BaseModel):
    question_index: int
    option_index: int


class SubmitPayload(BaseModel):
    confirmed: bool = False


class DirectoryPayload(BaseModel):
    directory: str
    subject: str | None = None


class ProfilePayload(BaseModel):
    display_name: str
    email: str
    target_exam: str | None = None


class PasswordChangePayload(BaseModel):
    current_password: str
    new_password: str
    confirm_password: str


class PreferencesPayload(BaseModel):
    default_time_limit_minutes: int = Field(default=DEFAULT_PREFERRED_TIME_LIMIT_MINUTES, gt=0)
    preferred_difficulty: str | None = None
    email_notifications: bool = False
    auto_submit: bool = True


# --- Serialization ---


def _profile_payload(profile: Profile) -> dict[str, object]:
    return {
        "id": profile.id,
        "email": profile.email,
        "display_name": profile.display_name,
        "role": profile.role.value,
        "target_exam": profile.target_exam,
        "preferences": profile.preferences.to_record(),
    }


def _identity_payload(identity: Identity) -> dict[str, object]:
    return {
        "id": identity.id,
        "email": identity.email,
        "display_name": identity.label,
        "email_verified": identity.email_verified,
    }


def _signed_in_payload(manager: StudyManager, identity: Identity) -> dict[str, object]:
    role = manager.session.role
    return {"identity": _identity_payload(identity), "role": role.value if role else None}


def _passage_payload(passage: Passage, include_answers: bool) -> dict[str, object]:
    record = passage.to_record()
    if not include_answers:
        for question in record["questions"]:
            question.pop("correct_index", None)
    record.update(renderer.render_passage(passage))
    return record


def _attempt_payload(attempt: Attempt) -> dict[str, object]:
    return attempt.to_record()


def _result_payload(result: QuizResult | None) -> dict[str, object] | None:
    if result is None:
        return None
    return asdict(result)


def _format_timer(seconds: int) -> str:
    minutes, remainder = divmod(max(0, seconds), 60)
    return f"{minutes:02d}:{remainder:02d}"


def _quiz_payload(engine: QuizEngine) -> dict[str, object]:
    snapshot = engine.snapshot()
    passage = engine.passage
    return {
        "state": snapshot.state.value,
        "passage": _passage_payload(passage, include_answers=False) if passage else None,
        "remaining_seconds": snapshot.remaining_seconds,
        "timer_label": _format_timer(snapshot.remaining_seconds),
        "low_time": snapshot.state is QuizState.ACTIVE and snapshot.remaining_seconds < LOW_TIME_WARNING_SECONDS,
        "time_limit_seconds": snapshot.time_limit_seconds,
        "answered": snapshot.answered,
        "total": snapshot.total,
        "answers": {str(index): option for index, option in snapshot.answers.items()},
        "result": _result_payload(engine.result) if snapshot.state is QuizState.FINISHED else None,
    }


def _parse_subject(value: str | None) -> Subject | None:
    return Subject.parse(value) if value else None


def _parse_difficulty(value: str | None) -> Difficulty | None:
    return Difficulty.parse(value) if value else None


def _get_study_manager_dependency(study_manager: StudyManager):
    def dependency() -> StudyManager:
        return study_manager

    return dependency


def create_api_app(study_manager: StudyManager) -> FastAPI:
    """Create a FastAPI application wired to the provided study manager."""

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await study_manager.startup()
        try:
            yield
        finally:
            await study_manager.shutdown()

    app = FastAPI(title=f"{APP_NAME} API", version=APP_VERSION, lifespan=lifespan)
    manager_dep = _get_study_manager_dependency(study_manager)

    @app.exception_handler(StudySphereError)
    async def handle_domain_error(request: Request, exc: StudySphereError) -> JSONResponse:
        status = status_for_error(exc)
        content: dict[str, Any] = {"detail": exc.message, "kind": exc.kind}
        if isinstance(exc, ValidationError):
            content["messages"] = exc.messages
        if isinstance(exc, ConfirmationRequiredError):
            content["answered"] = exc.answered
            content["total"] = exc.total
        if status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content=content)

    @app.get("/about")
    async def about() -> dict[str, str]:
        return {"name": APP_NAME, "version": APP_VERSION, "license": APP_LICENSE, "about": APP_ABOUT_TEXT}

    # --- Auth ---

    @app.post("/auth/sign-in")
    async def sign_in(payload: CredentialsPayload, manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        identity = await manager.session.sign_in(payload.email, payload.password)
        return _signed_in_payload(manager, identity)

    @app.post("/auth/sign-up", status_code=201)
    async def sign_up(payload: CredentialsPayload, manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        identity = await manager.session.sign_up(payload.email, payload.password, payload.display_name)
        return _signed_in_payload(manager, identity)

    @app.post("/auth/oauth/{provider}")
    async def sign_in_with_oauth(provider: str, manager: StudyManager = Depends(manager_dep)) -> dict[str, str]:
        return {"url": await manager.session.sign_in_with_oauth(provider)}

    @app.post("/auth/sign-out", status_code=204)
    async def sign_out(manager: StudyManager = Depends(manager_dep)) -> None:
        manager.leave_quiz()
        await manager.session.sign_out()

    @app.post("/auth/reset-password", status_code=202)
    async def reset_password(payload: EmailPayload, manager: StudyManager = Depends(manager_dep)) -> dict[str, str]:
        await manager.session.reset_password(payload.email)
        return {"detail": "Password reset email sent"}

    @app.get("/me")
    async def get_me(manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        identity = manager.session.current_identity()
        if identity is None:
            return {"authenticated": False, "identity": None, "role": None}
        role = await manager.session.resolve_role()
        return {"authenticated": True, "identity": _identity_payload(identity), "role": role.value if role else None}

    @app.get("/me/profile")
    async def get_profile(manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        return _profile_payload(await manager.session.get_profile())

    @app.put("/me/profile")
    async def update_profile(payload: ProfilePayload, manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        profile = await manager.session.update_profile(payload.display_name, payload.email, payload.target_exam)
        return _profile_payload(profile)

    @app.post("/me/password", status_code=204)
    async def change_password(payload: PasswordChangePayload, manager: StudyManager = Depends(manager_dep)) -> None:
        await manager.session.change_password(
            payload.current_password, payload.new_password, payload.confirm_password
        )

    @app.put("/me/preferences")
    async def update_preferences(
        payload: PreferencesPayload, manager: StudyManager = Depends(manager_dep)
    ) -> dict[str, object]:
        preferences = Preferences(
            default_time_limit_minutes=payload.default_time_limit_minutes,
            preferred_difficulty=_parse_difficulty(payload.preferred_difficulty),
            email_notifications=payload.email_notifications,
            auto_submit=payload.auto_submit,
        )
        return _profile_payload(await manager.session.update_preferences(preferences))

    @app.get("/gate/{kind}")
    async def check_gate(kind: str, manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        if kind == "admin":
            decision = await manager.session.require_admin()
        elif kind == "authenticated":
            decision = manager.session.require_authenticated()
        else:
            raise NotFoundError(f"Unknown gate '{kind}'")
        return asdict(decision)

    # --- Passages ---

    @app.get("/passages")
    async def list_passages(
        subject: str | None = None,
        difficulty: str | None = None,
        category: str | None = None,
        published_only: bool | None = None,
        order_by: str = "created_at",
        descending: bool = True,
        limit: int | None = None,
        manager: StudyManager = Depends(manager_dep),
    ) -> list[dict[str, object]]:
        passage_filter = PassageFilter(
            subject=_parse_subject(subject),
            difficulty=_parse_difficulty(difficulty),
            category=category,
            published_only=published_only,
            order_by=order_by,
            descending=descending,
            limit=limit,
        )
        is_admin = await manager.session.is_admin()
        passages = await manager.repository.list_passages(passage_filter)
        return [_passage_payload(passage, include_answers=is_admin) for passage in passages]

    @app.get("/passages/search")
    async def search_passages(
        q: str = "", subject: str | None = None, manager: StudyManager = Depends(manager_dep)
    ) -> list[dict[str, object]]:
        is_admin = await manager.session.is_admin()
        passages = await manager.repository.search_passages(q, PassageFilter(subject=_parse_subject(subject)))
        return [_passage_payload(passage, include_answers=is_admin) for passage in passages]

    @app.get("/passages/{passage_id}")
    async def get_passage(passage_id: str, manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        passage = await manager.repository.get_passage(passage_id)
        if passage is None:
            raise NotFoundError("Passage not found")
        return _passage_payload(passage, include_answers=await manager.session.is_admin())

    @app.post("/passages", status_code=201)
    async def create_passage(record: dict[str, Any], manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        await manager.session.ensure_admin()
        try:
            passage = Passage.from_record(record)
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed passage: {exc}") from exc
        created = await manager.repository.create_passage(passage)
        return _passage_payload(created, include_answers=True)

    @app.put("/passages/{passage_id}")
    async def update_passage(
        passage_id: str, changes: dict[str, Any], manager: StudyManager = Depends(manager_dep)
    ) -> dict[str, object]:
        updated = await manager.repository.update_passage(passage_id, changes)
        return _passage_payload(updated, include_answers=True)

    @app.post("/passages/{passage_id}/publish")
    async def publish_passage(
        passage_id: str, payload: PublishPayload, manager: StudyManager = Depends(manager_dep)
    ) -> dict[str, object]:
        updated = await manager.repository.set_published(passage_id, payload.is_published)
        return _passage_payload(updated, include_answers=True)

    @app.delete("/passages/{passage_id}", status_code=204)
    async def delete_passage(passage_id: str, manager: StudyManager = Depends(manager_dep)) -> None:
        await manager.repository.delete_passage(passage_id)

    @app.post("/passages/{passage_id}/export")
    async def export_passage(
        passage_id: str, payload: DirectoryPayload, manager: StudyManager = Depends(manager_dep)
    ) -> dict[str, str]:
        await manager.session.ensure_admin()
        path = await manager.export_passage(passage_id, Path(payload.directory))
        return {"path": str(path)}

    @app.post("/passages/import")
    async def import_passages(payload: DirectoryPayload, manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        directory = Path(payload.directory)
        if not directory.is_dir():
            raise ValidationError(f"{payload.directory} is not a directory")
        report = await manager.import_passages(directory, _parse_subject(payload.subject))
        return {
            "imported": [passage.id for passage in report.imported],
            "skipped": [path.name for path in report.skipped],
        }

    # --- Authoring ---

    @app.get("/authoring/draft")
    async def load_draft(manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        await manager.session.ensure_admin()
        return {"draft": manager.drafts.load_draft()}

    @app.put("/authoring/draft", status_code=202)
    async def autosave_draft(snapshot: dict[str, Any], manager: StudyManager = Depends(manager_dep)) -> dict[str, bool]:
        await manager.session.ensure_admin()
        manager.drafts.autosave(snapshot)
        return {"pending": manager.drafts.has_pending_write}

    @app.delete("/authoring/draft", status_code=204)
    async def clear_draft(manager: StudyManager = Depends(manager_dep)) -> None:
        await manager.session.ensure_admin()
        manager.drafts.clear_draft()

    @app.get("/authoring/bulk-parse")
    async def bulk_parse_help() -> dict[str, str]:
        return {"help": BULK_PASTE_HELP_TEXT}

    @app.post("/authoring/bulk-parse")
    async def bulk_parse(payload: BulkParsePayload, manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        await manager.session.ensure_admin()
        questions = manager.drafts.bulk_parse(payload.raw_text)
        if not questions:
            raise ValidationError("No valid questions found. Please check the format.")
        return {"questions": [question.to_record() for question in questions]}

    @app.post("/authoring/publish-form", status_code=201)
    async def publish_form(payload: PublishFormPayload, manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        snapshot = payload.model_dump(exclude={"passage_id"})
        passage = await manager.publish_form(snapshot, payload.passage_id)
        return _passage_payload(passage, include_answers=True)

    @app.get("/authoring/categories")
    async def list_categories(subject: str, manager: StudyManager = Depends(manager_dep)) -> dict[str, list[str]]:
        return {"categories": await manager.categories(Subject.parse(subject))}

    # --- Quiz ---

    @app.post("/quiz/start/{passage_id}")
    async def start_quiz(passage_id: str, manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        engine = await manager.start_quiz(passage_id)
        return _quiz_payload(engine)

    @app.get("/quiz")
    async def get_quiz(manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        return _quiz_payload(manager.require_engine())

    @app.post("/quiz/answer")
    async def select_answer(payload: AnswerPayload, manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        engine = manager.require_engine()
        accepted = engine.select_answer(payload.question_index, payload.option_index)
        return {"accepted": accepted, **_quiz_payload(engine)}

    @app.post("/quiz/submit")
    async def submit_quiz(payload: SubmitPayload, manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        engine = manager.require_engine()
        await engine.submit(confirmed=payload.confirmed)
        return _quiz_payload(engine)

    @app.post("/quiz/retake")
    async def retake_quiz(manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        engine = manager.require_engine()
        if not engine.retake():
            raise ValidationError("Only a finished quiz can be retaken.")
        return _quiz_payload(engine)

    @app.delete("/quiz", status_code=204)
    async def leave_quiz(manager: StudyManager = Depends(manager_dep)) -> None:
        manager.leave_quiz()

    # --- Attempts and statistics ---

    @app.get("/attempts")
    async def list_attempts(
        subject: str | None = None,
        passage_id: str | None = None,
        limit: int | None = None,
        manager: StudyManager = Depends(manager_dep),
    ) -> list[dict[str, object]]:
        if passage_id:
            attempts = await manager.repository.attempts_for_passage(passage_id)
        else:
            attempt_filter = AttemptFilter(subject=_parse_subject(subject))
            if limit is not None:
                attempt_filter.limit = limit
            attempts = await manager.repository.list_attempts_for_user(attempt_filter)
        return [_attempt_payload(attempt) for attempt in attempts]

    @app.get("/stats/me")
    async def my_stats(manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        stats = await manager.user_stats()
        return {
            "total_attempts": stats.total_attempts,
            "average_score": stats.average_score,
            "best_score": stats.best_score,
            "recent_score": stats.recent_score,
            "total_time_minutes": stats.total_time_minutes,
            "subject_stats": {subject.value: asdict(row) for subject, row in stats.subject_stats.items()},
            "score_history": chart_points(stats.score_history),
        }

    @app.get("/stats/trends")
    async def trends(
        days: int = 30, subject: str | None = None, manager: StudyManager = Depends(manager_dep)
    ) -> dict[str, object]:
        if days <= 0:
            raise ValidationError("days must be positive")
        trend = await manager.performance_trends(days, _parse_subject(subject))
        return {
            "daily": [
                {"date": row.day.isoformat(), "average_score": row.average_score, "attempt_count": row.attempt_count}
                for row in trend.daily
            ],
            "points": [{"x": row.day.isoformat(), "y": row.average_score} for row in trend.daily],
            "total_attempts": trend.total_attempts,
            "average_score": trend.average_score,
        }

    @app.get("/stats/achievements")
    async def list_achievements(manager: StudyManager = Depends(manager_dep)) -> list[dict[str, object]]:
        return [asdict(item) for item in await manager.achievements()]

    @app.get("/admin/stats")
    async def admin_stats(manager: StudyManager = Depends(manager_dep)) -> dict[str, object]:
        stats = await manager.passage_stats()
        return {
            "total": stats.total,
            "published": stats.published,
            "drafts": stats.drafts,
            "by_subject": {subject.value: count for subject, count in stats.by_subject.items()},
        }

    return app


def run_server(study_manager: StudyManager, settings: Settings) -> None:
    """Serve the API in the foreground until interrupted."""
    app = create_api_app(study_manager)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
