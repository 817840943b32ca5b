"""
Persistence contract for the behavior engine.

The engine only needs a handful of operations: profile load/save, an
append-only behavior log, bounded session history and intervention records.
Documents are plain JSON-compatible dicts; the engine owns (de)serialization.

Backends raise StorageError subclasses. Callers on the live path catch them
and carry on (profile loads fall back to defaults, writes are best-effort).
"""

import copy
import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


# --- ERRORS ---

class StorageError(Exception):
    """Base class for persistence failures."""


class ProfileLoadError(StorageError):
    """A stored profile could not be read or decoded."""


class PersistenceError(StorageError):
    """A write to durable storage failed."""


# --- CONTRACT ---

class BehaviorStorage(ABC):

    @abstractmethod
    def load_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Returns the stored profile document or None if the student has none."""

    @abstractmethod
    def save_profile(self, user_id: str, profile: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def append_behavior_log(self, user_id: str, entry: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def load_session_history(self, user_id: str) -> List[Dict[str, Any]]:
        """Session summaries, oldest first."""

    @abstractmethod
    def save_session_history(self, user_id: str, sessions: List[Dict[str, Any]]) -> None:
        """Replaces the stored history. Retention is enforced by the caller."""

    @abstractmethod
    def record_intervention(self, user_id: str, record: Dict[str, Any]) -> None:
        ...


# --- BACKENDS ---

class InMemoryBehaviorStorage(BehaviorStorage):
    """Process-local storage. Used by default and in tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.behavior_logs: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.sessions: Dict[str, List[Dict[str, Any]]] = {}
        self.interventions: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    def load_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            profile = self.profiles.get(user_id)
            return copy.deepcopy(profile) if profile is not None else None

    def save_profile(self, user_id: str, profile: Dict[str, Any]) -> None:
        with self._lock:
            self.profiles[user_id] = copy.deepcopy(profile)

    def append_behavior_log(self, user_id: str, entry: Dict[str, Any]) -> None:
        with self._lock:
            self.behavior_logs[user_id].append(copy.deepcopy(entry))

    def load_session_history(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self.sessions.get(user_id, []))

    def save_session_history(self, user_id: str, sessions: List[Dict[str, Any]]) -> None:
        with self._lock:
            self.sessions[user_id] = copy.deepcopy(sessions)

    def record_intervention(self, user_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self.interventions[user_id].append(copy.deepcopy(record))


class JsonFileBehaviorStorage(BehaviorStorage):
    """
    One JSON document per student per collection under a root directory:

        <root>/profiles/<user>.json
        <root>/sessions/<user>.json
        <root>/behavior_logs/<user>.jsonl
        <root>/interventions/<user>.jsonl
    """

    def __init__(self, root: str):
        self.root = Path(root)
        self._lock = threading.Lock()
        for collection in ("profiles", "sessions", "behavior_logs", "interventions"):
            (self.root / collection).mkdir(parents=True, exist_ok=True)

    def load_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        path = self._path("profiles", user_id, ".json")
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ProfileLoadError(f"Could not read profile for {user_id}: {e}") from e

    def save_profile(self, user_id: str, profile: Dict[str, Any]) -> None:
        self._write_json(self._path("profiles", user_id, ".json"), profile)

    def append_behavior_log(self, user_id: str, entry: Dict[str, Any]) -> None:
        self._append_line(self._path("behavior_logs", user_id, ".jsonl"), entry)

    def load_session_history(self, user_id: str) -> List[Dict[str, Any]]:
        path = self._path("sessions", user_id, ".json")
        if not path.exists():
            return []
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StorageError(f"Could not read session history for {user_id}: {e}") from e

    def save_session_history(self, user_id: str, sessions: List[Dict[str, Any]]) -> None:
        self._write_json(self._path("sessions", user_id, ".json"), sessions)

    def record_intervention(self, user_id: str, record: Dict[str, Any]) -> None:
        self._append_line(self._path("interventions", user_id, ".jsonl"), record)

    def _path(self, collection: str, user_id: str, suffix: str) -> Path:
        safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", user_id)
        return self.root / collection / f"{safe_id}{suffix}"

    def _write_json(self, path: Path, document: Any) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            with self._lock:
                tmp_path.write_text(json.dumps(document, default=str), encoding="utf-8")
                tmp_path.replace(path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Could not write {path}: {e}") from e

    def _append_line(self, path: Path, document: Any) -> None:
        try:
            with self._lock, path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(document, default=str) + "\n")
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Could not append to {path}: {e}") from e


class WriteBehindStorage(BehaviorStorage):
    """
    Wraps a backend so writes never block the caller.

    Writes are queued on a single worker thread (preserving their order);
    failures are logged from the future's callback. The latest queued
    profile and session history per student are kept in memory until their
    write lands, so reads see earlier writes without waiting on the queue.
    """

    def __init__(self, backend: BehaviorStorage, executor: Optional[ThreadPoolExecutor] = None):
        self.backend = backend
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="behavior-writer")
        self._pending: List[Future] = []
        self._queued_profiles: Dict[str, Dict[str, Any]] = {}
        self._queued_sessions: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def load_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            queued = self._queued_profiles.get(user_id)
        if queued is not None:
            return copy.deepcopy(queued)
        return self.backend.load_profile(user_id)

    def load_session_history(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            queued = self._queued_sessions.get(user_id)
        if queued is not None:
            return copy.deepcopy(queued)
        return self.backend.load_session_history(user_id)

    def save_profile(self, user_id: str, profile: Dict[str, Any]) -> None:
        self._submit("save_profile", self.backend.save_profile, user_id, copy.deepcopy(profile),
                     queued=self._queued_profiles)

    def append_behavior_log(self, user_id: str, entry: Dict[str, Any]) -> None:
        self._submit("append_behavior_log", self.backend.append_behavior_log, user_id, copy.deepcopy(entry))

    def save_session_history(self, user_id: str, sessions: List[Dict[str, Any]]) -> None:
        self._submit("save_session_history", self.backend.save_session_history, user_id, copy.deepcopy(sessions),
                     queued=self._queued_sessions)

    def record_intervention(self, user_id: str, record: Dict[str, Any]) -> None:
        self._submit("record_intervention", self.backend.record_intervention, user_id, copy.deepcopy(record))

    def flush(self, timeout: Optional[float] = None) -> None:
        """Waits for every queued write to finish."""
        with self._lock:
            pending, self._pending = self._pending, []
        for future in pending:
            try:
                future.result(timeout=timeout)
            except Exception:
                # Already logged by the done-callback
                pass

    def shutdown(self) -> None:
        self.flush()
        self._executor.shutdown(wait=True)

    def _submit(
        self,
        operation: str,
        fn: Callable[..., None],
        user_id: str,
        payload: Any,
        queued: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            if queued is not None:
                queued[user_id] = payload
            future = self._executor.submit(fn, user_id, payload)
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
        future.add_done_callback(lambda f: self._on_done(f, operation, user_id, payload, queued))

    def _on_done(
        self,
        future: Future,
        operation: str,
        user_id: str,
        payload: Any,
        queued: Optional[Dict[str, Any]],
    ) -> None:
        if queued is not None:
            with self._lock:
                # A newer write for the same student keeps its entry
                if queued.get(user_id) is payload:
                    del queued[user_id]
        self._log_failure(future, operation, user_id)

    def _log_failure(self, future: Future, operation: str, user_id: str) -> None:
        if future.cancelled():
            logger.warning(f"Background {operation} cancelled for {user_id}")
            return
        error = future.exception()
        if error is not None:
            logger.warning(f"Background {operation} failed for {user_id}: {error}")
