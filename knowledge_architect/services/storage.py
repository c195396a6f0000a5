"""
Local persistence for user settings and run history.

Values are stored as JSON documents, one file per key, under the data
directory. Writes go through a temporary file and an atomic rename so a crash
never leaves a half-written document behind.

Keys:
    - ``flowai-settings``: the ``AppSettings`` blob
    - ``flowai-history``: list of ``HistoryItem`` records, newest first
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from knowledge_architect.models.schemas import AppSettings, HistoryItem
from knowledge_architect.utils.logger import get_logger

logger = get_logger(__name__)

SETTINGS_KEY = "flowai-settings"
HISTORY_KEY = "flowai-history"


class StorageError(Exception):
    """A value could not be read from or written to the store."""
    pass


class JsonFileStore:
    """Key-value store backed by JSON files in a directory."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise StorageError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.json"

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read '{key}': {e}") from e

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_name = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(value, handle, indent=2, ensure_ascii=False)
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"Failed to save '{key}': {e}") from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete '{key}': {e}") from e


class SettingsRepository:
    """Loads and saves the user settings blob."""

    def __init__(self, store: JsonFileStore):
        self.store = store

    def load(self) -> AppSettings:
        """
        Load settings merged with defaults.

        A corrupt or invalid blob is logged and replaced by defaults rather
        than blocking the application.
        """
        try:
            data = self.store.get(SETTINGS_KEY)
            return AppSettings.from_stored(data)
        except (StorageError, ValidationError) as e:
            logger.error("Failed to load settings, using defaults", error=str(e))
            return AppSettings()

    def save(self, settings: AppSettings) -> None:
        self.store.set(SETTINGS_KEY, settings.to_stored())
        logger.info("Settings saved", provider=settings.provider)


class HistoryRepository:
    """Saved pipeline runs, newest first."""

    def __init__(self, store: JsonFileStore):
        self.store = store

    def load_all(self) -> list[HistoryItem]:
        try:
            raw = self.store.get(HISTORY_KEY, [])
            items = [HistoryItem.model_validate(entry) for entry in raw or []]
        except (StorageError, ValidationError, TypeError) as e:
            logger.error("Failed to load history", error=str(e))
            return []
        return sorted(items, key=lambda item: item.date, reverse=True)

    def _save(self, items: list[HistoryItem]) -> None:
        ordered = sorted(items, key=lambda item: item.date, reverse=True)
        self.store.set(HISTORY_KEY, [item.model_dump(mode="json") for item in ordered])

    def get(self, item_id: str) -> Optional[HistoryItem]:
        return next((item for item in self.load_all() if item.id == item_id), None)

    def add(self, topic: str, outputs: dict[str, str]) -> HistoryItem:
        item = HistoryItem(topic=topic, outputs=dict(outputs))
        self._save([item, *self.load_all()])
        logger.info("History item added", item_id=item.id, topic=topic)
        return item

    def delete(self, item_id: str) -> bool:
        items = self.load_all()
        remaining = [item for item in items if item.id != item_id]
        if len(remaining) == len(items):
            return False
        self._save(remaining)
        return True

    def clear(self) -> None:
        self._save([])


__all__ = [
    "SETTINGS_KEY",
    "HISTORY_KEY",
    "StorageError",
    "JsonFileStore",
    "SettingsRepository",
    "HistoryRepository",
]
