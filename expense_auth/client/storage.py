"""Key-value storage for client-persisted state.

Plain, unsigned JSON values under string keys. ``JsonFileStorage``
keeps everything in one JSON document on disk; ``MemoryStorage`` is for
tests and ephemeral clients.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol

log = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryStorage:
    """Dictionary-backed storage. Values are JSON round-tripped on write."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage:
    """Single JSON document on disk, rewritten atomically on every change.

    A missing or corrupt file reads as empty; corrupt content is logged
    and replaced on the next write.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            log.warning(f"Ignoring unreadable client state {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            log.warning(f"Ignoring malformed client state {self.path}")
            return {}
        return data

    def _save(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True))
        os.replace(tmp, self.path)

    def get(self, key: str) -> Optional[Any]:
        return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)
