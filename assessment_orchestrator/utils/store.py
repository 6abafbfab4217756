"""Key-value persistence for cooldown markers and staged answers.

The orchestration core treats the store as opaque: it only reads and writes
primitive values (str, int, float, bool, None) under string keys. Two
implementations are provided, an in-memory store for tests and short-lived
processes, and a JSON file store that survives restarts.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Protocol, Union

from assessment_orchestrator.utils.atomic import replace_json
from assessment_orchestrator.utils.logging import get_logger

logger = get_logger("utils.store")

Primitive = Union[str, int, float, bool, None]


class KeyValueStore(Protocol):
    """Minimal key-value persistence interface."""

    def get(self, key: str) -> Optional[Primitive]:
        ...

    def set(self, key: str, value: Primitive) -> None:
        ...

    def delete(self, key: str) -> bool:
        ...

    def keys(self, prefix: str = "") -> list[str]:
        ...


class MemoryStore:
    """Process-local store backed by a dict."""

    def __init__(self) -> None:
        self._data: dict[str, Primitive] = {}

    def get(self, key: str) -> Optional[Primitive]:
        return self._data.get(key)

    def set(self, key: str, value: Primitive) -> None:
        self._data[key] = value

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]


class FileStore:
    """
    JSON document store persisted to a single file.

    Every mutation rewrites the document atomically. Reads are served from
    memory after the first load; a corrupt file is logged and treated as
    empty so a bad write never blocks new submissions.
    """

    def __init__(self, path: str | Path) -> None:
        """
        Initialize the store.

        Args:
            path: File holding the JSON document
        """
        self.path = Path(path)
        self._data: Optional[dict[str, Primitive]] = None

    def _load(self) -> dict[str, Primitive]:
        if self._data is not None:
            return self._data

        self._data = {}
        if not self.path.exists():
            return self._data

        try:
            loaded = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("store_read_error", path=str(self.path), error=str(e))
            return self._data

        if isinstance(loaded, dict):
            self._data = loaded
        else:
            logger.warning("store_invalid_document", path=str(self.path))
        return self._data

    def _flush(self) -> None:
        replace_json(self.path, self._load())

    def get(self, key: str) -> Optional[Primitive]:
        return self._load().get(key)

    def set(self, key: str, value: Primitive) -> None:
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise TypeError(f"Store values must be primitive, got {type(value).__name__}")
        self._load()[key] = value
        self._flush()
        logger.debug("store_write", key=key)

    def delete(self, key: str) -> bool:
        data = self._load()
        if key not in data:
            return False
        del data[key]
        self._flush()
        logger.debug("store_delete", key=key)
        return True

    def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._load() if k.startswith(prefix)]
