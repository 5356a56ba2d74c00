"""Pytest fixtures for Notesync tests."""

import tempfile
from pathlib import Path

import pytest

from notesync.database.local_cache import MemoryLocalCache, NoteCache, SqliteLocalCache
from notesync.models.note import Note
from notesync.services.connectivity import ConnectivityMonitor
from notesync.services.offline_queue import OfflineQueue
from notesync.store import NotesStore
from tests.unit.fakes import FakeNoteRepository, FakeProbe, ManualScheduler


@pytest.fixture
def temp_db_path():
    """Provide a temporary database path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.db"


@pytest.fixture
def sqlite_cache(temp_db_path):
    """Provide a SQLite-backed cache in a temporary database."""
    return SqliteLocalCache(f"sqlite:///{temp_db_path}")


@pytest.fixture
def local_cache():
    return MemoryLocalCache()


@pytest.fixture
def note_cache(local_cache):
    return NoteCache(local_cache)


@pytest.fixture
def offline_queue(note_cache):
    return OfflineQueue(note_cache)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def probe():
    return FakeProbe(latency=0.05)


@pytest.fixture
def repository():
    return FakeNoteRepository()


@pytest.fixture
def monitor(probe, scheduler):
    """Monitor that commits transitions immediately."""
    return ConnectivityMonitor(probe, scheduler, debounce=0)


@pytest.fixture
def store(repository, local_cache, monitor, scheduler):
    """Store wired to in-memory fakes. Call ``await store.start()`` in the test."""
    return NotesStore(
        repository,
        local_cache,
        monitor,
        scheduler,
        sync_interval=30.0,
        retry_base_delay=1.0,
        retry_max_attempts=3,
        max_hierarchy_depth=10,
    )


@pytest.fixture
def make_note():
    """Factory for notes with sensible defaults."""

    def _make(note_id: str, title: str = "", **kwargs) -> Note:
        return Note(id=note_id, title=title or f"Note {note_id}", **kwargs)

    return _make
