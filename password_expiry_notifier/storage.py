"""JSON file persistence for whole collections (queue, history, profiles, settings)."""

from __future__ import annotations

import json
import logging
import os
import pathlib
import tempfile
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

LOGGER = logging.getLogger("password_expiry_notifier.storage")


class PersistenceError(RuntimeError):
    """Raised when a collection could not be written to disk."""


class JsonCollectionStore:
    """Stores each named collection as ``<data_dir>/<name>.json``.

    Reads fail open: a missing file yields the default and a corrupt or
    unreadable file is logged at error level and also yields the default.
    Writes replace the file atomically and raise :class:`PersistenceError`.
    Each collection has its own re-entrant lock; callers doing a
    read-modify-write hold it through :meth:`locked`.
    """

    def __init__(self, data_dir: os.PathLike | str) -> None:
        self._data_dir = pathlib.Path(data_dir)
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def data_dir(self) -> pathlib.Path:
        return self._data_dir

    def path_for(self, name: str) -> pathlib.Path:
        return self._data_dir / f"{name}.json"

    @contextmanager
    def locked(self, name: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(name, threading.RLock())
        with lock:
            yield

    def load_collection(self, name: str, default: Optional[Any] = None) -> Any:
        fallback = [] if default is None else default
        path = self.path_for(name)
        with self.locked(name):
            if not path.exists():
                return fallback
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                LOGGER.error("Could not read collection %s from %s: %s", name, path, exc)
                return fallback

    def save_collection(self, name: str, value: Any) -> None:
        path = self.path_for(name)
        with self.locked(name):
            try:
                self._data_dir.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=self._data_dir)
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as handle:
                        json.dump(value, handle, indent=2)
                    os.replace(tmp_name, path)
                except BaseException:
                    pathlib.Path(tmp_name).unlink(missing_ok=True)
                    raise
            except (OSError, TypeError, ValueError) as exc:
                LOGGER.error("Could not write collection %s to %s: %s", name, path, exc)
                raise PersistenceError(f"Failed to persist {name}: {exc}") from exc
