from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Protocol

from common.jsonio import atomic_write_json, load_json

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class StorageError(Exception):
    pass


class Storage(Protocol):
    """Key/value record storage. Each record is read and written as a whole."""

    def read(self, key: str) -> Any | None: ...

    def write(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class JsonFileStorage:
    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise StorageError(f"Invalid storage key: {key!r}")
        return self.root / f"{key}.json"

    def read(self, key: str) -> Any | None:
        path = self._path(key)
        try:
            if not path.exists():
                return None
            data = load_json(path)
        except OSError as e:
            raise StorageError(f"Failed to read record {key}: {e}") from e
        if data is None:
            raise StorageError(f"Record {key} at {path} is unreadable")
        return data

    def write(self, key: str, value: Any) -> None:
        path = self._path(key)
        try:
            atomic_write_json(path, value)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write record {key}: {e}") from e
        logger.debug(f"Wrote record {key} to {path}")

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete record {key}: {e}") from e


class MemoryStorage:
    """In-process storage. Values are copied through JSON like the file backend."""

    def __init__(self, records: dict[str, Any] | None = None):
        self.records: dict[str, str] = {}
        self.fail_writes = False
        for key, value in (records or {}).items():
            self.records[key] = json.dumps(value)

    def read(self, key: str) -> Any | None:
        raw = self.records.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(f"Record {key} is unreadable: {e}") from e

    def write(self, key: str, value: Any) -> None:
        if self.fail_writes:
            raise StorageError(f"Failed to write record {key}: storage is read-only")
        self.records[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self.records.pop(key, None)
