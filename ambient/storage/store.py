"""
Profile file storage, keyed by (session id, category).

Every write replaces the stored file as a whole. Two implementations:

- InMemoryProfileStore: a dict in server memory. Lost on restart.
- JsonFileProfileStore: one JSON document per session under a directory.

Usage:
    from ambient.storage.store import build_store

    store = build_store(settings.profile_store_path)
    store.set("session-1", ProfileFile(category="goals", content="..."))
    store.get("session-1", "goals")
"""

import json
import logging
import re
import threading
from pathlib import Path
from typing import Optional, Protocol

from ambient.agent.schemas import ProfileFile

logger = logging.getLogger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_.-]")


class ProfileStore(Protocol):
    """What the pipeline needs from storage."""

    def get(self, session_id: str, key: str) -> Optional[ProfileFile]:
        ...

    def set(self, session_id: str, file: ProfileFile) -> None:
        ...

    def list(self, session_id: str) -> dict[str, ProfileFile]:
        ...

    def clear(self, session_id: str) -> int:
        ...


class InMemoryProfileStore:
    """Profile files in server memory. Intentionally not persisted."""

    def __init__(self):
        self._files: dict[str, dict[str, ProfileFile]] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str, key: str) -> Optional[ProfileFile]:
        with self._lock:
            return self._files.get(session_id, {}).get(key)

    def set(self, session_id: str, file: ProfileFile) -> None:
        with self._lock:
            self._files.setdefault(session_id, {})[file.category] = file

    def list(self, session_id: str) -> dict[str, ProfileFile]:
        with self._lock:
            return dict(self._files.get(session_id, {}))

    def clear(self, session_id: str) -> int:
        """Delete every file of a session. Returns how many were removed."""
        with self._lock:
            removed = self._files.pop(session_id, {})
        logger.info(
            "store.cleared",
            extra={"action": "store.cleared", "removed": len(removed)},
        )
        return len(removed)


class JsonFileProfileStore:
    """
    One JSON document per session: {category: ProfileFile}.

    Whole-document rewrites; a lock serializes writers within the process.
    """

    def __init__(self, directory: str):
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, session_id: str) -> Path:
        safe = _UNSAFE_CHARS_RE.sub("_", session_id) or "_"
        return self._dir / f"{safe}.json"

    def _load(self, session_id: str) -> dict[str, ProfileFile]:
        path = self._path(session_id)
        if not path.exists():
            return {}
        data = json.loads(path.read_text(encoding="utf-8"))
        return {key: ProfileFile.model_validate(value) for key, value in data.items()}

    def _save(self, session_id: str, files: dict[str, ProfileFile]) -> None:
        payload = {key: file.model_dump(mode="json") for key, file in files.items()}
        self._path(session_id).write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def get(self, session_id: str, key: str) -> Optional[ProfileFile]:
        with self._lock:
            return self._load(session_id).get(key)

    def set(self, session_id: str, file: ProfileFile) -> None:
        with self._lock:
            files = self._load(session_id)
            files[file.category] = file
            self._save(session_id, files)

    def list(self, session_id: str) -> dict[str, ProfileFile]:
        with self._lock:
            return self._load(session_id)

    def clear(self, session_id: str) -> int:
        """Delete the session's document. Returns how many files it held."""
        with self._lock:
            files = self._load(session_id)
            self._path(session_id).unlink(missing_ok=True)
        logger.info(
            "store.cleared",
            extra={"action": "store.cleared", "removed": len(files)},
        )
        return len(files)


def build_store(path: str = "") -> ProfileStore:
    """JSON files under `path` when set, in-memory otherwise."""
    if path:
        return JsonFileProfileStore(path)
    return InMemoryProfileStore()
