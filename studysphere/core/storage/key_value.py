"""String key-value stores standing in for browser local storage."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class InMemoryKeyValueStore:
    """Volatile store, used by tests and as a session-only fallback."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._items: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)


class FileKeyValueStore:
    """Persists every key into a single JSON document on disk.

    The whole document is rewritten on each change; writes go to a sibling
    temporary file first so a crash never leaves a half-written store.
    """

    def __init__(self, file_path: Path) -> None:
        self._file_path = file_path.resolve()
        self._items: dict[str, str] = self._read()

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        items = {**self._items, key: value}
        self._write(items)
        self._items = items

    def remove_item(self, key: str) -> None:
        if key in self._items:
            items = {name: value for name, value in self._items.items() if name != key}
            self._write(items)
            self._items = items

    def keys(self) -> list[str]:
        return list(self._items)

    def _read(self) -> dict[str, str]:
        if not self._file_path.exists():
            return {}
        try:
            loaded = json.loads(self._file_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Local storage at %s is unreadable; starting empty", self._file_path)
            return {}
        if not isinstance(loaded, dict):
            return {}
        return {str(key): str(value) for key, value in loaded.items()}

    def _write(self, items: dict[str, str]) -> None:
        # Raises OSError; memory is only updated once the file is written.
        self._file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._file_path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(items, indent=2), encoding="utf-8")
        temp_path.replace(self._file_path)
