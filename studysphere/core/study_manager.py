"""Business logic shared by the web API and the command line."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from supabase import create_client

from studysphere.constants.quiz_constants import DEFAULT_ATTEMPT_LIMIT
from studysphere.constants.storage_constants import PROFILES_COLLECTION
from studysphere.core.config import Settings
from studysphere.core.errors import NotFoundError, ValidationError
from studysphere.core.models import Attempt, Passage, Role, Subject
from studysphere.core.passage_exporter import export_passage
from studysphere.core.passage_form import build_passage, known_categories
from studysphere.core.passage_importer import ImportReport, import_passages_from_directory
from studysphere.core.query import Query
from studysphere.core.services import statistics
from studysphere.core.services.backends import (
    DocumentBackend,
    LocalDocumentBackend,
    SupabaseDocumentBackend,
)
from studysphere.core.services.draft_store import DraftStore
from studysphere.core.services.identity import (
    IdentityProvider,
    LocalIdentityProvider,
    SupabaseIdentityProvider,
)
from studysphere.core.services.quiz_engine import QuizEngine
from studysphere.core.services.repository import AttemptFilter, PassageFilter, StudyRepository
from studysphere.core.services.session import SessionContext
from studysphere.core.storage.key_value import FileKeyValueStore, KeyValueStore

logger = logging.getLogger(__name__)

# Statistics look at the whole history rather than the default page size.
_STATS_ATTEMPT_LIMIT = 1000

_FORM_IMMUTABLE_FIELDS = ("id", "created_at", "created_by", "updated_at")


class StudyManager:
    """Facade over the session, repository, draft store and the quiz engine.

    One manager serves one browser session, so at most one quiz engine is
    alive at a time; starting a new quiz closes the previous one.
    """

    def __init__(
        self,
        store: KeyValueStore,
        backend: DocumentBackend,
        provider: IdentityProvider,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._store = store
        self._backend = backend
        self._session = SessionContext(
            provider,
            profiles=backend,
            store=store,
            role_ttl_seconds=self._settings.ROLE_CACHE_TTL_SECONDS,
        )
        self._repository = StudyRepository(backend, self._session, cache_store=store)
        self._drafts = DraftStore(store, quiet_seconds=self._settings.AUTOSAVE_QUIET_SECONDS)
        self._engine: QuizEngine | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "StudyManager":
        """Wire either the Supabase or the local file backend from ``settings``."""
        settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
        store = FileKeyValueStore(settings.local_store_path)
        if settings.uses_remote_backend:
            if not settings.SUPABASE_URL or not settings.SUPABASE_KEY:
                raise ValidationError("Remote storage needs STUDYSPHERE_SUPABASE_URL and STUDYSPHERE_SUPABASE_KEY.")
            client = create_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)
            logger.info("Using Supabase backend at %s", settings.SUPABASE_URL)
            return cls(store, SupabaseDocumentBackend(client), SupabaseIdentityProvider(client), settings)
        logger.info("Using local storage in %s", settings.local_store_path)
        return cls(store, LocalDocumentBackend(store), LocalIdentityProvider(store), settings)

    @property
    def session(self) -> SessionContext:
        return self._session

    @property
    def repository(self) -> StudyRepository:
        return self._repository

    @property
    def drafts(self) -> DraftStore:
        return self._drafts

    @property
    def engine(self) -> QuizEngine | None:
        return self._engine

    async def startup(self) -> None:
        await self._session.initialize()

    async def shutdown(self) -> None:
        self._drafts.flush()
        self.leave_quiz()
        logger.info("StudySphere manager shut down")

    # --- Quiz ---

    async def start_quiz(self, passage_id: str) -> QuizEngine:
        self.leave_quiz()
        engine = QuizEngine(
            self._repository,
            self._session,
            tick_interval=self._settings.TICK_INTERVAL_SECONDS,
        )
        self._engine = engine
        await engine.load(passage_id)
        return engine

    def require_engine(self) -> QuizEngine:
        if self._engine is None:
            raise NotFoundError("No quiz in progress")
        return self._engine

    def leave_quiz(self) -> None:
        if self._engine is not None:
            self._engine.close()
            self._engine = None

    # --- Authoring ---

    async def publish_form(self, snapshot: dict[str, Any], passage_id: str | None = None) -> Passage:
        """Validate the authoring form and create (or update) its passage."""
        await self._session.ensure_admin()
        passage = build_passage(snapshot, passage_id)
        if passage_id is None:
            saved = await self._repository.create_passage(passage)
        else:
            changes = passage.to_record()
            for name in _FORM_IMMUTABLE_FIELDS:
                changes.pop(name, None)
            saved = await self._repository.update_passage(passage_id, changes)
        self._drafts.clear_draft()
        return saved

    async def categories(self, subject: Subject) -> list[str]:
        passages = await self._repository.list_passages(PassageFilter(subject=subject))
        return known_categories(passages, subject)

    async def import_passages(self, directory: Path, subject: Subject | None = None) -> ImportReport:
        await self._session.ensure_admin()
        report = import_passages_from_directory(directory, subject)
        for passage in report.imported:
            await self._repository.import_passage(passage)
        logger.info(
            "Imported %s passage(s) from %s (%s skipped)", len(report.imported), directory, len(report.skipped)
        )
        return report

    async def export_passage(self, passage_id: str, directory: Path) -> Path:
        passage = await self._repository.get_passage(passage_id)
        if passage is None:
            raise NotFoundError("Passage not found")
        return export_passage(passage, directory)

    async def promote_to_admin(self, email: str) -> None:
        """Grant the admin role to the account registered as ``email``."""
        normalized = email.strip().lower()
        profiles = await self._backend.query(PROFILES_COLLECTION, Query().where("email", normalized))
        if not profiles:
            raise NotFoundError(f"No profile for {email}")
        profile = profiles[0]
        await self._backend.update(PROFILES_COLLECTION, profile["id"], {"role": Role.ADMIN.value})
        self._session.invalidate_role(profile["id"])
        logger.info("Promoted %s to admin", normalized)

    # --- Dashboards ---

    async def recent_attempts(self, limit: int = DEFAULT_ATTEMPT_LIMIT) -> list[Attempt]:
        return await self._repository.list_attempts_for_user(AttemptFilter(limit=limit))

    async def user_stats(self) -> statistics.UserStats:
        return statistics.user_stats(await self._all_attempts())

    async def performance_trends(self, days: int = 30, subject: Subject | None = None) -> statistics.PerformanceTrend:
        attempts = await self._repository.list_attempts_for_user(
            AttemptFilter(subject=subject, limit=_STATS_ATTEMPT_LIMIT)
        )
        return statistics.performance_trends(attempts, days)

    async def achievements(self) -> list[statistics.Achievement]:
        return statistics.achievements(await self._all_attempts())

    async def passage_stats(self) -> statistics.PassageStats:
        await self._session.ensure_admin()
        return statistics.passage_stats(await self._repository.list_passages(PassageFilter(published_only=False)))

    async def _all_attempts(self) -> list[Attempt]:
        return await self._repository.list_attempts_for_user(AttemptFilter(limit=_STATS_ATTEMPT_LIMIT))
