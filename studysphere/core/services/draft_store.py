"""Single-slot autosaved draft for the passage authoring form."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from studysphere.constants.quiz_constants import AUTOSAVE_QUIET_SECONDS
from studysphere.constants.storage_constants import DRAFT_KEY
from studysphere.core.bulk_parser import parse_bulk_questions
from studysphere.core.models import Question
from studysphere.core.storage.key_value import KeyValueStore

logger = logging.getLogger(__name__)

FormSnapshot = dict[str, Any]


class DraftStore:
    """Debounced draft persistence.

    Bursts of ``autosave`` calls collapse into one write of the latest
    snapshot once ``quiet_seconds`` pass without another call.
    """

    def __init__(self, store: KeyValueStore, quiet_seconds: float = AUTOSAVE_QUIET_SECONDS) -> None:
        self._store = store
        self._quiet_seconds = quiet_seconds
        self._pending: FormSnapshot | None = None
        self._handle: asyncio.TimerHandle | None = None

    @property
    def has_pending_write(self) -> bool:
        return self._handle is not None

    def autosave(self, snapshot: FormSnapshot) -> None:
        # Copy through JSON so later edits to the caller's dict are not saved by accident.
        self._pending = json.loads(json.dumps(snapshot))
        if self._handle is not None:
            self._handle.cancel()
        self._handle = asyncio.get_running_loop().call_later(self._quiet_seconds, self.flush)

    def flush(self) -> None:
        """Write the pending snapshot now, if there is one."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._pending is None:
            return
        try:
            self._store.set_item(DRAFT_KEY, json.dumps(self._pending))
        except OSError as exc:
            # Keep the snapshot so the next autosave or flush tries again.
            logger.warning("Could not save draft: %s", exc)
            return
        self._pending = None
        logger.debug("Draft saved")

    def load_draft(self) -> FormSnapshot | None:
        raw = self._store.get_item(DRAFT_KEY)
        if not raw:
            return None
        try:
            draft = json.loads(raw)
        except ValueError:
            logger.warning("Stored draft is corrupt; ignoring it")
            return None
        if not isinstance(draft, dict):
            logger.warning("Stored draft has an unexpected shape; ignoring it")
            return None
        return draft

    def clear_draft(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = None
        self._store.remove_item(DRAFT_KEY)

    @staticmethod
    def bulk_parse(raw_text: str) -> list[Question]:
        return parse_bulk_questions(raw_text)
