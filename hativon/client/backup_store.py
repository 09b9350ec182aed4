from __future__ import annotations

"""
Client-local crash-recovery mirror of the draft being edited.

Design intent:
- Write on every edit, synchronously, before any network activity.
- Keys come from an explicit namespaced key space so migration from the
  "new draft" slot to the id slot can be exercised on its own.
- A backup is a hint for recovery UI; conflict decisions never read it.
"""

import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from threading import Lock, RLock
from typing import Callable, Dict, Iterator, Optional

from pydantic import ValidationError

from hativon.internal_core.config import AutosaveConfig, project_root
from hativon.internal_core.contracts import DraftSnapshot, LocalBackup
from hativon.internal_core.versioning import format_version, is_newer, utc_now

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS_RE = re.compile(r"[^A-Za-z0-9_.-]")


class KeyValueStorage(ABC):
    @abstractmethod
    def get_item(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None: ...

    @abstractmethod
    def remove_item(self, key: str) -> None: ...

    @abstractmethod
    def keys(self) -> Iterator[str]: ...


class InMemoryKeyValueStorage(KeyValueStorage):
    def __init__(self) -> None:
        self._lock = Lock()
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self) -> Iterator[str]:
        with self._lock:
            return iter(sorted(self._items))


class JsonFileKeyValueStorage(KeyValueStorage):
    """One file per key; writes go through a temp file and an atomic rename."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()
        self._root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        safe = _UNSAFE_KEY_CHARS_RE.sub("_", key)
        if not safe:
            raise ValueError("Backup key is empty.")
        return self._root / f"{safe}.json"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set_item(self, key: str, value: str) -> None:
        path = self._path_for(key)
        fd, tmp_name = tempfile.mkstemp(dir=str(self._root), prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except Exception:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def remove_item(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def keys(self) -> Iterator[str]:
        return iter(sorted(p.stem for p in self._root.glob("*.json") if not p.name.startswith(".tmp-")))


@dataclass(frozen=True)
class BackupKeySpace:
    namespace: str = "hativon_autosave"

    def key_for(self, draft_id: Optional[str]) -> str:
        if not draft_id:
            return f"{self.namespace}_new"
        return f"{self.namespace}_post_{draft_id}"


class LocalBackupStore:
    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        key_space: Optional[BackupKeySpace] = None,
        now_fn: Callable = utc_now,
    ) -> None:
        self._storage = storage
        self._key_space = key_space or BackupKeySpace()
        self._now_fn = now_fn
        self._lock = RLock()

    @classmethod
    def from_config(cls, config: AutosaveConfig, *, repo_root: Optional[Path] = None) -> "LocalBackupStore":
        root = config.backup_dir_path(repo_root or project_root())
        return cls(
            JsonFileKeyValueStorage(root),
            key_space=BackupKeySpace(namespace=config.HATIVON_BACKUP_NAMESPACE),
        )

    @property
    def key_space(self) -> BackupKeySpace:
        return self._key_space

    def persist(
        self,
        draft_id: Optional[str],
        snapshot: DraftSnapshot,
        server_version: Optional[str] = None,
    ) -> Optional[LocalBackup]:
        backup = LocalBackup(
            timestamp=format_version(self._now_fn()),
            data=snapshot,
            server_version=server_version,
        )
        key = self._key_space.key_for(draft_id)
        try:
            with self._lock:
                self._storage.set_item(key, backup.model_dump_json(by_alias=True, exclude_none=True))
        except OSError as exc:
            # Storage full or unavailable; the network path still carries the edit.
            logger.error("Local backup write failed key=%s: %s", key, exc)
            return None
        return backup

    def peek(self, draft_id: Optional[str]) -> Optional[LocalBackup]:
        raw = self._storage.get_item(self._key_space.key_for(draft_id))
        if raw is None:
            return None
        try:
            return LocalBackup.model_validate_json(raw)
        except ValidationError:
            return None

    def read(self, draft_id: Optional[str], server_version: Optional[str]) -> Optional[LocalBackup]:
        """Return the backup only when it is newer than the known server version.

        Stale or unreadable backups are removed.
        """
        key = self._key_space.key_for(draft_id)
        with self._lock:
            raw = self._storage.get_item(key)
            if raw is None:
                return None
            try:
                backup = LocalBackup.model_validate_json(raw)
            except ValidationError:
                logger.warning("Discarding unreadable local backup key=%s", key)
                self._storage.remove_item(key)
                return None
            if is_newer(backup.timestamp, server_version):
                return backup
            logger.debug(
                "Discarding stale local backup key=%s backup=%s server=%s",
                key,
                backup.timestamp,
                server_version,
            )
            self._storage.remove_item(key)
            return None

    def clear(self, draft_id: Optional[str]) -> None:
        with self._lock:
            self._storage.remove_item(self._key_space.key_for(draft_id))

    def clear_if_matches(self, draft_id: Optional[str], snapshot: DraftSnapshot) -> bool:
        """Clear only if the stored backup holds exactly ``snapshot``.

        A newer edit written after the save was sent keeps its backup.
        """
        with self._lock:
            backup = self.peek(draft_id)
            if backup is None or backup.data != snapshot:
                return False
            self._storage.remove_item(self._key_space.key_for(draft_id))
            return True

    def migrate(self, old_draft_id: Optional[str], new_draft_id: str) -> bool:
        old_key = self._key_space.key_for(old_draft_id)
        new_key = self._key_space.key_for(new_draft_id)
        if old_key == new_key:
            return False
        with self._lock:
            raw = self._storage.get_item(old_key)
            if raw is None:
                return False
            self._storage.set_item(new_key, raw)
            self._storage.remove_item(old_key)
        logger.debug("Migrated local backup %s -> %s", old_key, new_key)
        return True
