from __future__ import annotations

from typing import Dict, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .versioning import parse_version

SaveStatus = Literal["idle", "saving", "saved", "error", "conflict"]

DraftStatus = Literal["draft", "published"]

ConflictChoice = Literal["overwrite", "reload", "continue_editing"]

EDITABLE_FIELDS = ("title", "content", "description", "cover_image", "custom_author")


def _supplied_fields(model: BaseModel) -> Dict[str, str]:
    supplied: Dict[str, str] = {}
    for name in EDITABLE_FIELDS:
        value = getattr(model, name)
        if value is not None:
            supplied[name] = value
    return supplied


def _check_version(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    parse_version(value)
    return value


class DraftSnapshot(BaseModel):
    """Field values of an in-progress edit, as the editor holds them."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    title: str = ""
    content: str = ""
    description: Optional[str] = None
    cover_image: Optional[str] = Field(default=None, alias="coverImage")
    custom_author: Optional[str] = Field(default=None, alias="customAuthor")

    def supplied_fields(self) -> Dict[str, str]:
        return _supplied_fields(self)


class ServerContent(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    title: Optional[str] = None
    content: Optional[str] = None
    description: Optional[str] = None
    cover_image: Optional[str] = Field(default=None, alias="coverImage")
    custom_author: Optional[str] = Field(default=None, alias="customAuthor")

    def to_snapshot(self) -> DraftSnapshot:
        return DraftSnapshot(
            title=self.title or "",
            content=self.content or "",
            description=self.description,
            cover_image=self.cover_image,
            custom_author=self.custom_author,
        )


class AutosavePayload(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    draft_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("draftId", "postId", "draft_id"),
        serialization_alias="draftId",
    )
    title: Optional[str] = None
    content: Optional[str] = None
    description: Optional[str] = None
    cover_image: Optional[str] = Field(default=None, alias="coverImage")
    custom_author: Optional[str] = Field(default=None, alias="customAuthor")
    expected_version: Optional[str] = Field(default=None, alias="expectedVersion")

    @field_validator("draft_id")
    @classmethod
    def _normalize_draft_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @field_validator("expected_version")
    @classmethod
    def _validate_expected_version(cls, value: Optional[str]) -> Optional[str]:
        return _check_version(value)

    def supplied_fields(self) -> Dict[str, str]:
        return _supplied_fields(self)

    @classmethod
    def from_snapshot(
        cls,
        *,
        draft_id: Optional[str],
        snapshot: DraftSnapshot,
        expected_version: Optional[str],
    ) -> "AutosavePayload":
        return cls(
            draft_id=draft_id,
            expected_version=expected_version,
            **snapshot.supplied_fields(),
        )


class SaveSuccessResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: Literal[True] = True
    id: str
    updated_at: str = Field(alias="updatedAt")
    is_new: bool = Field(default=False, alias="isNew")


class ConflictResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conflict: Literal[True] = True
    server_version: str = Field(alias="serverVersion")
    server_content: ServerContent = Field(default_factory=ServerContent, alias="serverContent")

    @field_validator("server_version")
    @classmethod
    def _validate_server_version(cls, value: str) -> str:
        parse_version(value)
        return value


class ErrorResponse(BaseModel):
    error: str
    errors: Dict[str, str] = Field(default_factory=dict)


class DraftDetailResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    content: str
    description: Optional[str] = None
    cover_image: Optional[str] = Field(default=None, alias="coverImage")
    custom_author: Optional[str] = Field(default=None, alias="customAuthor")
    status: DraftStatus = "draft"
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")


class LocalBackup(BaseModel):
    """Client-side crash-recovery snapshot; never authoritative."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    timestamp: str
    data: DraftSnapshot
    server_version: Optional[str] = Field(default=None, alias="serverVersion")

    @field_validator("timestamp")
    @classmethod
    def _validate_timestamp(cls, value: str) -> str:
        parse_version(value)
        return value

    @field_validator("server_version")
    @classmethod
    def _validate_server_version(cls, value: Optional[str]) -> Optional[str]:
        return _check_version(value)
