"""Durable key/value cache backing the local mirror of notes and queue."""

import json
from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notesync.database.schema import CacheEntryRecord, init_database
from notesync.errors import StorageError
from notesync.models.note import Note, format_datetime, parse_datetime

NOTES_KEY = "notesync-notes"
OFFLINE_QUEUE_KEY = "notesync-offline-queue"
LAST_SYNC_KEY = "notesync-last-sync"
PREFERENCES_KEY = "notesync-preferences"

APP_KEYS = (NOTES_KEY, OFFLINE_QUEUE_KEY, LAST_SYNC_KEY, PREFERENCES_KEY)


@runtime_checkable
class LocalCache(Protocol):
    """Key/value persistence that never raises to its callers."""

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value, or default when missing or unreadable."""
        ...

    def set(self, key: str, value: Any) -> bool:
        """Store a JSON-compatible value. Returns False on failure."""
        ...

    def remove(self, key: str) -> bool:
        """Delete a key. Returns False on failure."""
        ...


class SqliteLocalCache:
    """LocalCache stored as JSON documents in a SQLite table."""

    def __init__(self, database_url: str):
        """Initialize cache with database connection.

        Raises:
            StorageError: If the database cannot be opened
        """
        try:
            self.session_factory = init_database(database_url)
        except SQLAlchemyError as e:
            raise StorageError(f"Cannot open local cache: {e}") from e

    def _get_session(self) -> Session:
        """Get a new database session."""
        return self.session_factory()

    def get(self, key: str, default: Any = None) -> Any:
        try:
            raw = self._load(key)
        except StorageError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return default
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            return default

    def set(self, key: str, value: Any) -> bool:
        try:
            self._store(key, json.dumps(value))
        except (StorageError, TypeError, ValueError) as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False
        return True

    def remove(self, key: str) -> bool:
        try:
            with self._get_session() as session:
                record = session.get(CacheEntryRecord, key)
                if record:
                    session.delete(record)
                    session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Cache remove failed for {key}: {e}")
            return False
        return True

    def _load(self, key: str) -> Optional[str]:
        try:
            with self._get_session() as session:
                record = session.get(CacheEntryRecord, key)
                return record.value if record else None
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    def _store(self, key: str, raw: str) -> None:
        try:
            with self._get_session() as session:
                record = session.get(CacheEntryRecord, key)
                if record:
                    record.value = raw
                else:
                    session.add(CacheEntryRecord(key=key, value=raw))
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e


class MemoryLocalCache:
    """LocalCache held in process memory.

    Values are kept as JSON text so callers never share mutable state
    with the cache, the same as with the SQLite backend.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any) -> bool:
        try:
            self._data[key] = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False
        return True

    def remove(self, key: str) -> bool:
        self._data.pop(key, None)
        return True

    def keys(self) -> list[str]:
        return list(self._data)


class NoteCache:
    """Typed access to the application keys of a LocalCache."""

    def __init__(self, cache: LocalCache):
        self.cache = cache

    # ==================== Notes ====================

    def get_notes(self) -> list[Note]:
        entries = self.cache.get(NOTES_KEY, [])
        if not isinstance(entries, list):
            logger.warning(f"Ignoring malformed notes mirror: {type(entries).__name__}")
            return []
        notes = []
        for entry in entries:
            if not isinstance(entry, dict):
                logger.warning(f"Skipping unreadable cached note: {entry!r}")
                continue
            try:
                notes.append(Note.from_dict(entry))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Skipping unreadable cached note: {e}")
        return notes

    def set_notes(self, notes: list[Note]) -> bool:
        return self.cache.set(NOTES_KEY, [note.to_dict() for note in notes])

    # ==================== Offline queue ====================

    def get_offline_queue(self) -> list[dict[str, Any]]:
        entries = self.cache.get(OFFLINE_QUEUE_KEY, [])
        if not isinstance(entries, list):
            logger.warning(f"Ignoring malformed offline queue mirror: {type(entries).__name__}")
            return []
        return [entry for entry in entries if isinstance(entry, dict)]

    def set_offline_queue(self, entries: list[dict[str, Any]]) -> bool:
        return self.cache.set(OFFLINE_QUEUE_KEY, entries)

    # ==================== Sync bookkeeping ====================

    def get_last_sync(self) -> Optional[datetime]:
        value = self.cache.get(LAST_SYNC_KEY)
        try:
            return parse_datetime(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed last-sync timestamp: {value!r}")
            return None

    def set_last_sync(self, value: Optional[datetime]) -> bool:
        if value is None:
            return self.cache.remove(LAST_SYNC_KEY)
        return self.cache.set(LAST_SYNC_KEY, format_datetime(value))

    # ==================== Preferences ====================

    def get_preferences(self) -> dict[str, Any]:
        value = self.cache.get(PREFERENCES_KEY, {})
        return value if isinstance(value, dict) else {}

    def set_preferences(self, preferences: dict[str, Any]) -> bool:
        return self.cache.set(PREFERENCES_KEY, preferences)

    def clear_app_data(self) -> bool:
        """Remove every application key. Returns False if any removal failed."""
        results = [self.cache.remove(key) for key in APP_KEYS]
        return all(results)
