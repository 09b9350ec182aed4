from __future__ import annotations

"""
Authoritative create / conditional-update of drafts (optimistic concurrency).

Design intent:
- The stored ``updated_at`` is the only concurrency token.
- A stale ``expected_version`` is rejected as a conflict, never merged or overwritten.
- Writes are compare-and-swap against the store, so two gateway calls cannot
  both pass the version check and both write.
- A genuine no-op keeps the stored version.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from hativon.drafts.authorization import Caller, OwnershipPolicy, author_owns_draft
from hativon.drafts.errors import (
    AuthorizationError,
    DraftConflictError,
    DraftNotFoundError,
    PayloadValidationError,
    TransientSaveError,
)
from hativon.internal_core.config import AutosaveConfig
from hativon.internal_core.contracts import (
    EDITABLE_FIELDS,
    DraftDetailResponse,
    SaveSuccessResponse,
    ServerContent,
)
from hativon.internal_core.draft_store import DraftRecord, DraftStore, new_draft_id
from hativon.internal_core.versioning import VersionClock, is_newer, parse_version

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldLimits:
    title: int = 200
    content: int = 50_000
    description: int = 300
    cover_image: int = 2048
    custom_author: int = 100

    @classmethod
    def from_config(cls, config: AutosaveConfig) -> "FieldLimits":
        return cls(
            title=config.HATIVON_MAX_TITLE_CHARS,
            content=config.HATIVON_MAX_CONTENT_CHARS,
            description=config.HATIVON_MAX_DESCRIPTION_CHARS,
            custom_author=config.HATIVON_MAX_AUTHOR_CHARS,
        )


@dataclass(frozen=True)
class SaveSuccess:
    id: str
    updated_at: str
    is_new: bool = False
    changed_fields: tuple[str, ...] = field(default_factory=tuple)

    def to_response(self) -> SaveSuccessResponse:
        return SaveSuccessResponse(id=self.id, updated_at=self.updated_at, is_new=self.is_new)


def server_content_of(record: DraftRecord) -> ServerContent:
    return ServerContent(
        title=record.title,
        content=record.content,
        description=record.description,
        cover_image=record.cover_image,
        custom_author=record.author,
    )


def draft_detail_of(record: DraftRecord) -> DraftDetailResponse:
    return DraftDetailResponse(
        id=record.id,
        title=record.title,
        content=record.content,
        description=record.description,
        cover_image=record.cover_image,
        custom_author=record.author,
        status=record.status,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


class PersistenceGateway:
    def __init__(
        self,
        store: DraftStore,
        *,
        limits: Optional[FieldLimits] = None,
        ownership: OwnershipPolicy = author_owns_draft,
        clock: Optional[VersionClock] = None,
        default_title: str = "Untitled draft",
        max_cas_attempts: int = 3,
    ) -> None:
        self._store = store
        self._limits = limits or FieldLimits()
        self._ownership = ownership
        self._clock = clock or VersionClock()
        self._default_title = default_title
        self._max_cas_attempts = max(1, int(max_cas_attempts))

    @classmethod
    def from_config(cls, store: DraftStore, config: AutosaveConfig) -> "PersistenceGateway":
        return cls(
            store,
            limits=FieldLimits.from_config(config),
            default_title=config.HATIVON_DEFAULT_DRAFT_TITLE,
            max_cas_attempts=config.HATIVON_CAS_MAX_ATTEMPTS,
        )

    @property
    def store(self) -> DraftStore:
        return self._store

    def save(
        self,
        *,
        caller: Caller,
        draft_id: Optional[str],
        fields: Mapping[str, str],
        expected_version: Optional[str] = None,
    ) -> SaveSuccess:
        supplied = self._validate(fields, expected_version)
        if draft_id is None:
            return self._create(caller, supplied)

        for attempt in range(1, self._max_cas_attempts + 1):
            current = self._load_owned(caller, draft_id, action="edit")

            if expected_version and is_newer(current.version, expected_version):
                logger.warning(
                    "Autosave conflict draft_id=%s expected=%s server=%s",
                    draft_id,
                    expected_version,
                    current.version,
                )
                raise DraftConflictError(current.version, server_content_of(current))

            changes = {
                name: value
                for name, value in supplied.items()
                if current.field_value(name) != value
            }
            if not changes:
                logger.debug("Autosave no-op draft_id=%s version=%s", draft_id, current.version)
                return SaveSuccess(id=current.id, updated_at=current.version, is_new=False)

            new_version = self._clock.next_after(current.version)
            updated = self._store.update_if_version(
                draft_id,
                expected_version=current.version,
                changes=changes,
                new_version=new_version,
            )
            if updated is not None:
                logger.info(
                    "Autosave accepted draft_id=%s version=%s fields=%s",
                    draft_id,
                    updated.version,
                    ",".join(sorted(changes)),
                )
                return SaveSuccess(
                    id=updated.id,
                    updated_at=updated.version,
                    is_new=False,
                    changed_fields=tuple(sorted(changes)),
                )
            # Lost the race to a concurrent write; re-read and re-check.
            logger.debug("Autosave CAS miss draft_id=%s attempt=%d", draft_id, attempt)

        raise TransientSaveError(
            f"Draft {draft_id} kept changing during save; gave up after {self._max_cas_attempts} attempts."
        )

    def get_draft(self, *, caller: Caller, draft_id: str) -> DraftRecord:
        return self._load_owned(caller, draft_id, action="access")

    def delete_draft(self, *, caller: Caller, draft_id: str) -> None:
        self._load_owned(caller, draft_id, action="delete")
        if not self._store.delete(draft_id):
            raise DraftNotFoundError(f"Draft not found: {draft_id}")
        logger.info("Draft deleted draft_id=%s", draft_id)

    def _create(self, caller: Caller, supplied: Dict[str, str]) -> SaveSuccess:
        title = supplied.get("title") or ""
        content = supplied.get("content") or ""
        if not title and not content:
            raise PayloadValidationError("Title or content required for new draft.")

        version = self._clock.next_after(None)
        record = DraftRecord(
            id=new_draft_id(),
            title=title or self._default_title,
            content=content,
            description=supplied.get("description") or None,
            cover_image=supplied.get("cover_image") or None,
            author=supplied.get("custom_author") or caller.display_name or None,
            author_id=caller.user_id,
            status="draft",
            created_at=version,
            updated_at=version,
        )
        created = self._store.create(record)
        logger.info("Draft created draft_id=%s version=%s", created.id, created.version)
        return SaveSuccess(
            id=created.id,
            updated_at=created.version,
            is_new=True,
            changed_fields=tuple(sorted(supplied)),
        )

    def _load_owned(self, caller: Caller, draft_id: str, *, action: str) -> DraftRecord:
        current = self._store.get(draft_id)
        if current is None:
            raise DraftNotFoundError(f"Draft not found: {draft_id}")
        if not self._ownership(caller, current):
            raise AuthorizationError(f"Forbidden - you can only {action} your own drafts.")
        return current

    def _validate(self, fields: Mapping[str, str], expected_version: Optional[str]) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        supplied: Dict[str, str] = {}
        for name, value in fields.items():
            if name not in EDITABLE_FIELDS:
                errors[name] = "Unknown field."
                continue
            if value is None:
                continue
            if not isinstance(value, str):
                errors[name] = "Must be a string."
                continue
            limit = getattr(self._limits, name)
            if len(value) > limit:
                errors[name] = f"Must be at most {limit} characters."
                continue
            supplied[name] = value
        if expected_version:
            try:
                parse_version(expected_version)
            except ValueError as exc:
                errors["expectedVersion"] = str(exc)
        if errors:
            raise PayloadValidationError("Invalid auto-save data", errors)
        return supplied
