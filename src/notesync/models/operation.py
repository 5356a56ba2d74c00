"""Offline operation model for Notesync."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Union

from notesync.errors import NoteValidationError
from notesync.models.inputs import CreateNoteInput, DeleteNoteInput, UpdateNoteInput
from notesync.models.note import format_datetime, parse_datetime, utcnow

OperationData = Union[CreateNoteInput, UpdateNoteInput, DeleteNoteInput]


class OperationKind(str, Enum):
    """Kind of a queued mutation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


PAYLOAD_TYPES: dict[OperationKind, type[OperationData]] = {
    OperationKind.CREATE: CreateNoteInput,
    OperationKind.UPDATE: UpdateNoteInput,
    OperationKind.DELETE: DeleteNoteInput,
}


def new_operation_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class OfflineOperation:
    """One pending mutation awaiting remote application.

    The payload type always matches the kind: create carries a
    CreateNoteInput, update an UpdateNoteInput, delete a DeleteNoteInput.
    """

    kind: OperationKind
    data: OperationData
    id: str = field(default_factory=new_operation_id)
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        kind = OperationKind(self.kind)
        object.__setattr__(self, "kind", kind)
        expected = PAYLOAD_TYPES[kind]
        if not isinstance(self.data, expected):
            raise TypeError(
                f"{kind.value} operation requires {expected.__name__}, "
                f"got {type(self.data).__name__}"
            )

    @classmethod
    def create(cls, data: CreateNoteInput) -> "OfflineOperation":
        return cls(kind=OperationKind.CREATE, data=data)

    @classmethod
    def update(cls, data: UpdateNoteInput) -> "OfflineOperation":
        return cls(kind=OperationKind.UPDATE, data=data)

    @classmethod
    def delete(cls, note_id: str) -> "OfflineOperation":
        return cls(kind=OperationKind.DELETE, data=DeleteNoteInput(id=note_id))

    @property
    def note_id(self) -> str:
        """Id of the note this operation targets."""
        return self.data.id or ""

    def references(self, note_id: str) -> bool:
        """Whether this operation targets the note or names it as parent."""
        if self.note_id == note_id:
            return True
        return getattr(self.data, "parent_id", None) == note_id

    def rebind(self, old_id: str, new_id: str) -> "OfflineOperation":
        """Return a copy with every reference to old_id replaced by new_id."""
        if not self.references(old_id):
            return self
        updates: dict[str, Any] = {}
        if self.note_id == old_id:
            updates["id"] = new_id
        if getattr(self.data, "parent_id", None) == old_id:
            updates["parent_id"] = new_id
        # model_copy keeps fields_set so an update stays a partial update
        data = self.data.model_copy(update=updates)
        return replace(self, data=data)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted queue layout."""
        return {
            "id": self.id,
            "operation": self.kind.value,
            "data": self.data.to_payload(),
            "timestamp": format_datetime(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OfflineOperation":
        """Parse the persisted queue layout.

        Raises:
            NoteValidationError: If the entry is malformed
        """
        if not isinstance(data, dict):
            raise NoteValidationError(f"Malformed offline operation: {data!r}")
        try:
            kind = OperationKind(data["operation"])
            timestamp = parse_datetime(data["timestamp"])
            entry_id = str(data["id"])
        except (KeyError, ValueError, TypeError) as e:
            raise NoteValidationError(f"Malformed offline operation: {e}") from e
        payload_data = data.get("data") or {}
        if not isinstance(payload_data, dict):
            raise NoteValidationError(f"Malformed {kind.value} payload: {payload_data!r}")
        payload = PAYLOAD_TYPES[kind].parse(payload_data)
        return cls(kind=kind, data=payload, id=entry_id, timestamp=timestamp or utcnow())
