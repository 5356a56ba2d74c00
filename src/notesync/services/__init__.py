"""Services for Notesync."""

from notesync.services.connectivity import ConnectivityMonitor, HttpProbe, Probe
from notesync.services.note_repository import HttpNoteRepository, NoteRepository
from notesync.services.offline_queue import DrainResult, OfflineQueue
from notesync.services.scheduler import AsyncioScheduler, CancelToken, Scheduler
from notesync.services.sync_engine import SyncEngine, SyncTarget

__all__ = [
    "AsyncioScheduler",
    "CancelToken",
    "ConnectivityMonitor",
    "DrainResult",
    "HttpNoteRepository",
    "HttpProbe",
    "NoteRepository",
    "OfflineQueue",
    "Probe",
    "Scheduler",
    "SyncEngine",
    "SyncTarget",
]
