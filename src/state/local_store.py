from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import ValidationError

from common.errors import DocumentFormatError, MigrationError

from .models import ClassData, ClassInfo, DailyRecord, Document, Student, TodoItem


logger = logging.getLogger(__name__)

DEFAULT_STORAGE_DIR_ENV = "JOURNAL_STORAGE_DIR"

# Storage keys (shared with the browser build so exported files line up)
KEY_DATA = "cj_data"
KEY_LEGACY_RECORDS = "cj_daily_records"
KEY_LEGACY_STUDENTS = "cj_students"
KEY_LEGACY_TODOS = "cj_todos"
KEY_DEVICE_ID = "cj_device_id"
KEY_LAST_SYNC_TIME = "cj_last_sync_time"
KEY_LAST_SYNC_OWNER = "cj_last_sync_owner"
KEY_PENDING_CHANGES = "cj_pending_changes"

LEGACY_KEYS = (KEY_LEGACY_RECORDS, KEY_LEGACY_STUDENTS, KEY_LEGACY_TODOS)
DEFAULT_CLASS_NAME = "My Class"


def _default_storage_file() -> Path:
    # Prefer explicit env var, else project-local .journal folder
    base = os.environ.get(DEFAULT_STORAGE_DIR_ENV)
    if base:
        return Path(base) / "local_storage.json"
    return Path(".journal") / "local_storage.json"


class LocalStorage:
    """
    Durable string key/value storage backed by a single JSON file.

    - Mirrors the browser `localStorage` surface: get_item / set_item / remove_item.
    - Every write rewrites the file through a temp file and an atomic rename.
    - A corrupt file raises DocumentFormatError instead of being replaced, so
      nothing on disk is thrown away silently.
    """

    def __init__(self, path: Optional[os.PathLike[str] | str] = None) -> None:
        self._path = Path(path) if path else _default_storage_file()
        self._data: Dict[str, str] = {}
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        if self._path.exists():
            try:
                with self._path.open("r", encoding="utf-8") as f:
                    raw = json.load(f)
            except (OSError, json.JSONDecodeError) as ex:
                raise DocumentFormatError(f"Local storage file is unreadable: {self._path}") from ex
            if not isinstance(raw, dict):
                raise DocumentFormatError(f"Local storage file is not a JSON object: {self._path}")
            self._data = {str(k): str(v) for k, v in raw.items() if v is not None}
        self._loaded = True

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        os.replace(tmp, self._path)

    def get_item(self, key: str) -> Optional[str]:
        self._ensure_loaded()
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._ensure_loaded()
        self._data[key] = value
        self._save()

    def remove_item(self, key: str) -> None:
        self._ensure_loaded()
        if self._data.pop(key, None) is not None:
            self._save()

    def keys(self) -> List[str]:
        self._ensure_loaded()
        return sorted(self._data)


ChangeListener = Callable[[Document], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_legacy_list(storage: LocalStorage, key: str) -> List[Any]:
    raw = storage.get_item(key)
    if raw is None:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as ex:
        raise MigrationError(f"Legacy key {key} does not hold valid JSON") from ex
    if not isinstance(value, list):
        raise MigrationError(f"Legacy key {key} does not hold a list")
    return value


class LocalDocumentStore:
    """
    Local Document Store: the single versioned Document plus the small amount
    of sync bookkeeping that must survive a restart.

    Usage
    - `load()` returns the current Document (empty on first run).
    - `save(doc)` is the UI mutation path: it stamps `updated_at` and notifies
      change listeners (the sync engine marks itself dirty from there).
    - `replace(doc)` is the sync path: wholesale write, no notification.
    - `run_migration()` converts the old flat layout once; later calls are no-ops.

    Storage keys
    - `cj_data`: current Document JSON.
    - `cj_daily_records`, `cj_students`, `cj_todos`: legacy flat layout (read-only here).
    - `cj_device_id`: installation token.
    - `cj_last_sync_time` / `cj_last_sync_owner`: watermark and the owner it belongs to.
    - `cj_pending_changes`: "1" while local edits have not been uploaded.
    """

    def __init__(
        self,
        storage: Optional[LocalStorage] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storage = storage or LocalStorage()
        self._clock = clock
        self._listeners: List[ChangeListener] = []

    @property
    def storage(self) -> LocalStorage:
        return self._storage

    # -------- Document --------
    def load(self) -> Document:
        raw = self._storage.get_item(KEY_DATA)
        if raw is None:
            return Document.empty()
        try:
            return Document.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as ex:
            raise DocumentFormatError("Stored document is not valid") from ex

    def save(self, document: Document) -> Document:
        """Persist a UI mutation and notify listeners. Returns the stored copy."""
        stamped = document.model_copy(update={"updated_at": self._clock()})
        self._write(stamped)
        for listener in list(self._listeners):
            listener(stamped)
        return stamped

    def replace(self, document: Document) -> None:
        """Persist a Document wholesale on behalf of sync (no listeners fired)."""
        self._write(document)

    def _write(self, document: Document) -> None:
        payload = json.dumps(document.to_json_dict(), separators=(",", ":"), sort_keys=True)
        self._storage.set_item(KEY_DATA, payload)

    def add_change_listener(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # -------- Migration --------
    def needs_migration(self) -> bool:
        if self._storage.get_item(KEY_DATA) is not None:
            return False
        return any(self._storage.get_item(k) is not None for k in LEGACY_KEYS)

    def run_migration(self) -> bool:
        """Move the legacy flat layout into a single default class.

        Returns True when a migration was written, False when there was nothing to do.
        Raises MigrationError on malformed legacy data; legacy keys are never
        modified, so the raw data stays available for another attempt.
        """
        if not self.needs_migration():
            return False

        records = _parse_legacy_list(self._storage, KEY_LEGACY_RECORDS)
        students = _parse_legacy_list(self._storage, KEY_LEGACY_STUDENTS)
        todos = _parse_legacy_list(self._storage, KEY_LEGACY_TODOS)
        try:
            class_data = ClassData(
                students=[Student.model_validate(s) for s in students],
                records=[DailyRecord.model_validate(r) for r in records],
                todos=[TodoItem.model_validate(t) for t in todos],
            )
        except ValidationError as ex:
            raise MigrationError("Legacy data does not match the expected shape") from ex

        class_id = str(uuid4())
        document = Document(
            classes=[ClassInfo(id=class_id, name=DEFAULT_CLASS_NAME, order=0)],
            class_data={class_id: class_data},
            active_class_id=class_id,
        )
        self._write(document)
        logger.info(
            "Migrated legacy data: %d students, %d records, %d todos",
            len(class_data.students),
            len(class_data.records),
            len(class_data.todos),
        )
        return True

    # -------- Device identity --------
    def device_id(self) -> str:
        """Return the installation token, generating and persisting it on first use."""
        existing = self._storage.get_item(KEY_DEVICE_ID)
        if existing:
            return existing
        token = uuid4().hex
        self._storage.set_item(KEY_DEVICE_ID, token)
        return token

    # -------- Sync bookkeeping --------
    def last_synced_at(self, owner: str) -> Optional[datetime]:
        """Watermark for `owner`; None if never synced or synced for another owner."""
        if self._storage.get_item(KEY_LAST_SYNC_OWNER) != owner:
            return None
        raw = self._storage.get_item(KEY_LAST_SYNC_TIME)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("Ignoring unparsable sync watermark %r", raw)
            return None

    def set_last_synced_at(self, owner: str, when: datetime) -> None:
        self._storage.set_item(KEY_LAST_SYNC_OWNER, owner)
        self._storage.set_item(KEY_LAST_SYNC_TIME, when.isoformat())

    def has_pending_changes(self) -> bool:
        return self._storage.get_item(KEY_PENDING_CHANGES) == "1"

    def set_pending_changes(self, pending: bool) -> None:
        if pending:
            self._storage.set_item(KEY_PENDING_CHANGES, "1")
        else:
            self._storage.remove_item(KEY_PENDING_CHANGES)


__all__ = [
    "LocalStorage",
    "LocalDocumentStore",
    "KEY_DATA",
    "KEY_DEVICE_ID",
    "LEGACY_KEYS",
]
