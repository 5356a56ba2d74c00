"""Validated input shapes for note actions."""

from datetime import datetime
from typing import Any, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from notesync.errors import NoteValidationError

DEFAULT_TITLE = "Untitled Note"
MAX_TITLE_LENGTH = 200
MAX_CONTENT_LENGTH = 1_000_000
MAX_TAGS_PER_NOTE = 20
MAX_TAG_LENGTH = 50

InputT = TypeVar("InputT", bound="NoteInput")


def normalize_title(value: Optional[str]) -> str:
    title = (value or "").strip()
    if not title:
        return DEFAULT_TITLE
    if len(title) > MAX_TITLE_LENGTH:
        raise ValueError(f"Title exceeds {MAX_TITLE_LENGTH} characters")
    return title


def normalize_tags(values: list[str]) -> list[str]:
    """Strip tags, drop empties and duplicates while keeping order."""
    tags: list[str] = []
    for raw in values:
        tag = raw.strip()
        if not tag or tag in tags:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValueError(f"Tag '{tag[:20]}...' exceeds {MAX_TAG_LENGTH} characters")
        tags.append(tag)
    if len(tags) > MAX_TAGS_PER_NOTE:
        raise ValueError(f"A note can have at most {MAX_TAGS_PER_NOTE} tags")
    return tags


def check_content(value: str) -> str:
    if len(value) > MAX_CONTENT_LENGTH:
        raise ValueError(f"Content exceeds {MAX_CONTENT_LENGTH} characters")
    return value


class NoteInput(BaseModel):
    """Common base for action inputs."""

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def parse(cls: type[InputT], data: dict[str, Any]) -> InputT:
        """Validate a plain mapping, raising NoteValidationError on bad input."""
        try:
            return cls.model_validate(data)
        except (ValidationError, TypeError, AttributeError) as e:
            raise NoteValidationError(str(e)) from e

    def to_payload(self) -> dict[str, Any]:
        """JSON-compatible payload sent to the remote store and the queue mirror."""
        return self.model_dump(mode="json")


class CreateNoteInput(NoteInput):
    """Input for creating a note. `id` is filled in for notes created locally."""

    id: Optional[str] = None
    title: str = DEFAULT_TITLE
    content: str = ""
    parent_id: Optional[str] = None
    position: Optional[int] = Field(default=None, ge=0)
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title", mode="before")
    @classmethod
    def validate_title(cls, value: Optional[str]) -> str:
        return normalize_title(value)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, value: list[str]) -> list[str]:
        return normalize_tags(value)

    @field_validator("content")
    @classmethod
    def validate_content(cls, value: str) -> str:
        return check_content(value)


class UpdateNoteInput(NoteInput):
    """Input for updating a note.

    Only fields explicitly given are changed; passing ``parent_id=None``
    moves the note to the root.
    """

    id: str
    title: Optional[str] = None
    content: Optional[str] = None
    parent_id: Optional[str] = None
    position: Optional[int] = Field(default=None, ge=0)
    is_archived: Optional[bool] = None
    is_favorite: Optional[bool] = None
    tags: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("title", mode="before")
    @classmethod
    def validate_title(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else normalize_title(value)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        return None if value is None else normalize_tags(value)

    @field_validator("content")
    @classmethod
    def validate_content(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else check_content(value)

    def changes(self) -> dict[str, Any]:
        """Fields explicitly set by the caller, excluding the id.

        A null is only meaningful for ``parent_id``; other nulls are dropped.
        """
        data = self.model_dump(exclude_unset=True, exclude={"id"})
        return {
            key: value
            for key, value in data.items()
            if value is not None or key == "parent_id"
        }

    @property
    def moves(self) -> bool:
        """Whether this update changes the parent."""
        return "parent_id" in self.model_fields_set

    def to_payload(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude_unset=True)
        data["id"] = self.id
        return data


class DeleteNoteInput(NoteInput):
    """Input for deleting a note."""

    id: str


class NotesFilter(BaseModel):
    """Local filter and sort options over the note collection."""

    model_config = ConfigDict(extra="ignore")

    tags: Optional[list[str]] = None
    is_archived: Optional[bool] = None
    is_favorite: Optional[bool] = None
    parent_id: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    updated_after: Optional[datetime] = None
    updated_before: Optional[datetime] = None
    sort_by: Literal["created_at", "updated_at", "title", "position"] = "updated_at"
    sort_order: Literal["asc", "desc"] = "desc"
    limit: Optional[int] = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)

    def to_params(self) -> dict[str, Any]:
        """Query parameters for the remote store, dropping unset values."""
        params = self.model_dump(mode="json", exclude_none=True, exclude_unset=True)
        if "tags" in params:
            params["tags"] = ",".join(params["tags"])
        return params
