"""Data models for Notesync."""

from notesync.models.inputs import (
    CreateNoteInput,
    DeleteNoteInput,
    NotesFilter,
    UpdateNoteInput,
)
from notesync.models.note import Note, NoteSyncStatus, SearchHit
from notesync.models.operation import OfflineOperation, OperationKind
from notesync.models.sync import (
    ConnectionEvent,
    ConnectionQuality,
    SyncState,
    SyncStats,
    SyncStatus,
)
from notesync.models.tree import NoteTreeNode

__all__ = [
    "ConnectionEvent",
    "ConnectionQuality",
    "CreateNoteInput",
    "DeleteNoteInput",
    "Note",
    "NoteSyncStatus",
    "NoteTreeNode",
    "NotesFilter",
    "OfflineOperation",
    "OperationKind",
    "SearchHit",
    "SyncState",
    "SyncStats",
    "SyncStatus",
    "UpdateNoteInput",
]
