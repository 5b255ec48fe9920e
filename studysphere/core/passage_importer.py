"""Utilities for importing passages from a directory of JSON files.

Each ``*.json`` file holds one passage in the same shape
``passage_exporter.export_passage`` writes. Files that cannot be read or do
not describe a valid passage are skipped with a warning so that one bad file
does not block the rest of a batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from pathlib import Path

from studysphere.core.errors import StudySphereError, ValidationError
from studysphere.core.models import Passage, Subject

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("id", "title", "subject")


class PassageImportError(ValidationError):
    """Raised when a passage file cannot be parsed."""


@dataclass(slots=True)
class ImportReport:
    imported: list[Passage] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)


def load_passage_from_file(file_path: Path) -> Passage:
    try:
        record = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise PassageImportError(f"Could not read {file_path.name}: {exc}") from exc
    if not isinstance(record, dict):
        raise PassageImportError(f"{file_path.name} does not contain a passage object.")
    missing = [name for name in _REQUIRED_FIELDS if not record.get(name)]
    if missing:
        raise PassageImportError(f"{file_path.name} is missing {', '.join(missing)}.")
    try:
        return Passage.from_record(record)
    except StudySphereError as exc:
        raise PassageImportError(f"{file_path.name}: {exc.message}") from exc
    except (KeyError, TypeError, ValueError) as exc:
        raise PassageImportError(f"{file_path.name}: malformed field ({exc})") from exc


def import_passages_from_directory(directory: Path, subject: Subject | None = None) -> ImportReport:
    """Load every passage file in ``directory``, optionally only for ``subject``."""
    report = ImportReport()
    for file_path in sorted(directory.glob("*.json")):
        try:
            passage = load_passage_from_file(file_path)
        except PassageImportError as exc:
            logger.warning("Skipping %s: %s", file_path, exc.message)
            report.skipped.append(file_path)
            continue
        if subject is not None and passage.subject is not subject:
            logger.warning("Skipping %s: subject %s is not %s", file_path, passage.subject.value, subject.value)
            report.skipped.append(file_path)
            continue
        report.imported.append(passage)
    return report
