from __future__ import annotations

import sqlite3
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, Mapping, Optional

from .contracts import EDITABLE_FIELDS, DraftStatus

# Editable field name -> stored column name.
_COLUMN_FOR_FIELD = {
    "title": "title",
    "content": "content",
    "description": "description",
    "cover_image": "cover_image",
    "custom_author": "author",
}


@dataclass(frozen=True)
class DraftRecord:
    id: str
    title: str
    content: str
    author_id: str
    created_at: str
    updated_at: str
    description: Optional[str] = None
    cover_image: Optional[str] = None
    author: Optional[str] = None
    status: DraftStatus = "draft"

    @property
    def version(self) -> str:
        return self.updated_at

    def field_value(self, name: str) -> Optional[str]:
        return getattr(self, _COLUMN_FOR_FIELD[name])

    def field_values(self) -> Dict[str, Optional[str]]:
        return {name: self.field_value(name) for name in EDITABLE_FIELDS}


def new_draft_id() -> str:
    return uuid.uuid4().hex


class DraftStore(ABC):
    """Create/read/conditional-update primitives over draft records."""

    @abstractmethod
    def create(self, record: DraftRecord) -> DraftRecord: ...

    @abstractmethod
    def get(self, draft_id: str) -> Optional[DraftRecord]: ...

    @abstractmethod
    def update_if_version(
        self,
        draft_id: str,
        *,
        expected_version: str,
        changes: Mapping[str, str],
        new_version: str,
    ) -> Optional[DraftRecord]:
        """Apply ``changes`` only while the stored version equals ``expected_version``.

        Returns the updated record, or None when the record is gone or its
        version moved (no rows affected).
        """

    @abstractmethod
    def delete(self, draft_id: str) -> bool: ...


class InMemoryDraftStore(DraftStore):
    def __init__(self) -> None:
        self._lock = RLock()
        self._drafts: Dict[str, DraftRecord] = {}

    def create(self, record: DraftRecord) -> DraftRecord:
        with self._lock:
            if record.id in self._drafts:
                raise KeyError(f"Draft already exists: {record.id}")
            self._drafts[record.id] = record
        return record

    def get(self, draft_id: str) -> Optional[DraftRecord]:
        with self._lock:
            return self._drafts.get(draft_id)

    def update_if_version(
        self,
        draft_id: str,
        *,
        expected_version: str,
        changes: Mapping[str, str],
        new_version: str,
    ) -> Optional[DraftRecord]:
        columns = {_COLUMN_FOR_FIELD[name]: value for name, value in changes.items()}
        with self._lock:
            current = self._drafts.get(draft_id)
            if current is None or current.updated_at != expected_version:
                return None
            updated = replace(current, updated_at=new_version, **columns)
            self._drafts[draft_id] = updated
        return updated

    def delete(self, draft_id: str) -> bool:
        with self._lock:
            return self._drafts.pop(draft_id, None) is not None

    def count(self) -> int:
        with self._lock:
            return len(self._drafts)


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS drafts (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    description TEXT,
    cover_image TEXT,
    author TEXT,
    author_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'draft',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

_SELECT_COLUMNS = (
    "id, title, content, description, cover_image, author, author_id, status, created_at, updated_at"
)


def _row_to_record(row: sqlite3.Row) -> DraftRecord:
    return DraftRecord(
        id=row["id"],
        title=row["title"],
        content=row["content"],
        description=row["description"],
        cover_image=row["cover_image"],
        author=row["author"],
        author_id=row["author_id"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SqliteDraftStore(DraftStore):
    """SQLite-backed store; the version check lives in the UPDATE's WHERE clause."""

    def __init__(self, path: Path | str) -> None:
        target = str(path)
        if target != ":memory:":
            Path(target).parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._conn = sqlite3.connect(target, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.execute(_SCHEMA_SQL)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def create(self, record: DraftRecord) -> DraftRecord:
        with self._lock:
            self._conn.execute(
                f"INSERT INTO drafts ({_SELECT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.title,
                    record.content,
                    record.description,
                    record.cover_image,
                    record.author,
                    record.author_id,
                    record.status,
                    record.created_at,
                    record.updated_at,
                ),
            )
            self._conn.commit()
        return record

    def get(self, draft_id: str) -> Optional[DraftRecord]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM drafts WHERE id = ?", (draft_id,)
            ).fetchone()
        return _row_to_record(row) if row else None

    def update_if_version(
        self,
        draft_id: str,
        *,
        expected_version: str,
        changes: Mapping[str, str],
        new_version: str,
    ) -> Optional[DraftRecord]:
        assignments = [f"{_COLUMN_FOR_FIELD[name]} = ?" for name in changes]
        assignments.append("updated_at = ?")
        params = [*changes.values(), new_version, draft_id, expected_version]
        with self._lock:
            cursor = self._conn.execute(
                f"UPDATE drafts SET {', '.join(assignments)} WHERE id = ? AND updated_at = ?",
                params,
            )
            self._conn.commit()
            if cursor.rowcount != 1:
                return None
            row = self._conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM drafts WHERE id = ?", (draft_id,)
            ).fetchone()
        return _row_to_record(row) if row else None

    def delete(self, draft_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM drafts WHERE id = ?", (draft_id,))
            self._conn.commit()
        return cursor.rowcount > 0
