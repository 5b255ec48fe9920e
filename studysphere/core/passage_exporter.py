"""Utilities for exporting passages to self-describing JSON files."""

from __future__ import annotations

import json
from pathlib import Path

from studysphere.core.models import Passage


def export_passage(passage: Passage, directory: Path) -> Path:
    """Write ``passage`` to ``<directory>/<id>.json`` and return the file path."""
    directory = directory.resolve()
    directory.mkdir(parents=True, exist_ok=True)
    file_path = directory / f"{passage.id}.json"
    file_path.write_text(serialize_passage(passage), encoding="utf-8")
    return file_path


def serialize_passage(passage: Passage) -> str:
    return json.dumps(passage.to_record(), indent=2, ensure_ascii=False) + "\n"
