"""Local persistence for Notesync."""

from notesync.database.local_cache import (
    LocalCache,
    MemoryLocalCache,
    NoteCache,
    SqliteLocalCache,
)

__all__ = ["LocalCache", "MemoryLocalCache", "NoteCache", "SqliteLocalCache"]
