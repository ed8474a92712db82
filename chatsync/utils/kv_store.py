import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from chatsync.errors import PersistenceFailure


class KeyValueStore(Protocol):

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


class MemoryStore:

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value


class JsonFileStore:
    """Key-value store backed by a single JSON file.

    Every ``set`` rewrites the file through a temp file and ``os.replace``
    so a crash mid-write leaves the previous contents intact. Failures are
    raised as ``PersistenceFailure``; callers decide whether to swallow them.
    """

    def __init__(self, path: str) -> None:
        self._path = Path(path)
        self._data: Dict[str, Any] = {}
        self._loaded = False

    def _load(self) -> None:
        if self._loaded:
            return
        if self._path.exists():
            try:
                with self._path.open("r", encoding="utf-8") as fh:
                    data = json.load(fh)
            except (OSError, ValueError) as exc:
                raise PersistenceFailure(f"cannot read {self._path}: {exc}") from exc
            if not isinstance(data, dict):
                raise PersistenceFailure(f"{self._path} does not hold a JSON object")
            self._data = data
        self._loaded = True

    def get(self, key: str) -> Optional[Any]:
        self._load()
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        try:
            self._load()
        except PersistenceFailure:
            # an unreadable file is replaced by the in-memory state
            self._loaded = True
        self._data[key] = value
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            if self._path.parent and not self._path.parent.exists():
                self._path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as fh:
                json.dump(self._data, fh, separators=(",", ":"))
            os.replace(tmp, self._path)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceFailure(f"cannot write {self._path}: {exc}") from exc
