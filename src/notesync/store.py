"""NotesStore: the single owner of note state and its action surface."""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar, Union

from loguru import logger
from pydantic import ValidationError

from notesync.config import Settings
from notesync.database.local_cache import LocalCache, MemoryLocalCache, NoteCache, SqliteLocalCache
from notesync.errors import (
    ConnectivityError,
    NoteNotFoundError,
    NoteSyncError,
    NoteValidationError,
    RemoteOperationError,
)
from notesync.models.inputs import (
    MAX_TITLE_LENGTH,
    CreateNoteInput,
    NoteInput,
    NotesFilter,
    UpdateNoteInput,
    normalize_tags,
)
from notesync.models.note import Note, NoteSyncStatus, utcnow
from notesync.models.operation import OfflineOperation, OperationKind
from notesync.models.sync import SyncState, SyncStatus
from notesync.models.tree import NoteTreeNode
from notesync.services.connectivity import ConnectivityMonitor, HttpProbe, Probe
from notesync.services.note_repository import HttpNoteRepository, NoteRepository
from notesync.services.offline_queue import OfflineQueue
from notesync.services.scheduler import AsyncioScheduler, Scheduler
from notesync.services.sync_engine import SyncEngine, apply_operation
from notesync.services.tree import build_tree, next_position, validate_move

VIEW_MODES = ("grid", "list", "tree")
COPY_SUFFIX = " (Copy)"

InputT = TypeVar("InputT", bound=NoteInput)
StoreListener = Callable[["StoreSnapshot"], None]


@dataclass(frozen=True)
class StoreSnapshot:
    """Read-only view of the store. Notes are copies."""

    notes: tuple[Note, ...]
    tree: tuple[NoteTreeNode, ...]
    selected_note_id: Optional[str]
    search_query: str
    search_results: tuple[Note, ...]
    filters: NotesFilter
    expanded_notes: frozenset[str]
    view_mode: str
    sidebar_collapsed: bool
    loading: bool
    error: Optional[str]
    sync: SyncState

    @property
    def selected_note(self) -> Optional[Note]:
        for note in self.notes:
            if note.id == self.selected_note_id:
                return note
        return None

    @property
    def queue_length(self) -> int:
        return self.sync.queue_length


@dataclass
class ReorderResult:
    """Outcome of a reorder: notes updated and notes that failed, by id."""

    updated: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class NotesStore:
    """Authoritative in-memory note state with optimistic, offline-first actions.

    Every mutation is applied locally first. It is sent to the repository
    directly only when online with an empty offline queue; otherwise it is
    queued so per-note ordering is preserved.

    Args:
        repository (NoteRepository): Remote store
        cache (LocalCache): Durable mirror
        monitor (ConnectivityMonitor): Online/offline source
        scheduler (Scheduler): Timer source shared with the sync engine
        sync_interval (float): Seconds between periodic syncs
        retry_base_delay (float): Base delay for sync retry backoff
        retry_max_attempts (int): Automatic sync retries
        max_hierarchy_depth (int): Maximum number of hierarchy levels
    """

    def __init__(
        self,
        repository: NoteRepository,
        cache: LocalCache,
        monitor: ConnectivityMonitor,
        scheduler: Scheduler,
        *,
        sync_interval: float = 30.0,
        retry_base_delay: float = 1.0,
        retry_max_attempts: int = 3,
        max_hierarchy_depth: int = 10,
    ):
        self.repository = repository
        self.cache = NoteCache(cache)
        self.monitor = monitor
        self.scheduler = scheduler
        self.max_hierarchy_depth = max_hierarchy_depth
        self.queue = OfflineQueue(self.cache)
        self.engine = SyncEngine(
            repository,
            self.queue,
            monitor,
            scheduler,
            self.cache,
            self,
            sync_interval=sync_interval,
            retry_base_delay=retry_base_delay,
            retry_max_attempts=retry_max_attempts,
        )
        self.engine.add_listener(self._on_sync_state)
        self._listeners: list[StoreListener] = []
        self._direct_lock = asyncio.Lock()
        self._in_flight: set[str] = set()
        # Notes written directly while a refetch was running
        self._written_during_refetch: set[str] = set()
        self._init_state()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repository: Optional[NoteRepository] = None,
        cache: Optional[LocalCache] = None,
        probe: Optional[Probe] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> "NotesStore":
        """Wire a store from settings, with optional overrides for collaborators."""
        scheduler = scheduler or AsyncioScheduler()
        if repository is None:
            repository = HttpNoteRepository(
                settings.api_url,
                token=settings.api_token,
                timeout=settings.api_timeout,
                max_attempts=settings.api_max_attempts,
            )
        if cache is None:
            cache = open_local_cache(settings)
        monitor = ConnectivityMonitor(
            probe or HttpProbe(settings.probe_url, timeout=settings.probe_timeout),
            scheduler,
            debounce=settings.connectivity_debounce,
            check_interval=settings.connectivity_check_interval,
        )
        return cls(
            repository,
            cache,
            monitor,
            scheduler,
            sync_interval=settings.sync_interval,
            retry_base_delay=settings.retry_base_delay,
            retry_max_attempts=settings.retry_max_attempts,
            max_hierarchy_depth=settings.max_hierarchy_depth,
        )

    def _init_state(self) -> None:
        self._notes: dict[str, Note] = {}
        self._tree: list[NoteTreeNode] = []
        self.selected_note_id: Optional[str] = None
        self.search_query = ""
        self._search_results: list[str] = []
        self.filters = NotesFilter()
        self.expanded_notes: set[str] = set()
        self.view_mode: str = "grid"
        self.sidebar_collapsed = False
        self.loading = False
        self.error: Optional[str] = None

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Hydrate from the local cache, start background work and sync if online."""
        self._notes = {note.id: note for note in self.cache.get_notes()}
        loaded = self.queue.load()
        self.engine.last_sync_at = self.cache.get_last_sync()
        self._load_preferences()
        self._rebuild_tree()
        logger.debug(f"Loaded {len(self._notes)} cached note(s), {loaded} queued operation(s)")

        self.engine.start()
        self.monitor.start()
        if await self.monitor.check(force=True):
            try:
                await self.fetch_notes()
            except RemoteOperationError as e:
                logger.error(f"Initial fetch rejected, using local notes: {e.message}")
        self._notify()

    async def close(self) -> None:
        """Cancel timers, persist state and wait for running callbacks."""
        self.engine.stop()
        self.monitor.stop()
        self._persist_notes()
        self._persist_preferences()
        aclose = getattr(self.scheduler, "aclose", None)
        if aclose is not None:
            await aclose()

    def reset(self) -> None:
        """Restore the initial state, including an empty offline queue."""
        self._init_state()
        self.queue.clear()
        self.engine.reset()
        self._notify()

    # ==================== Snapshot ====================

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            notes=tuple(note.copy() for note in self._notes.values()),
            tree=tuple(self._tree),
            selected_note_id=self.selected_note_id,
            search_query=self.search_query,
            search_results=tuple(
                self._notes[note_id].copy()
                for note_id in self._search_results
                if note_id in self._notes
            ),
            filters=self.filters.model_copy(),
            expanded_notes=frozenset(self.expanded_notes),
            view_mode=self.view_mode,
            sidebar_collapsed=self.sidebar_collapsed,
            loading=self.loading,
            error=self.error,
            sync=self.engine.state,
        )

    @property
    def tree(self) -> list[NoteTreeNode]:
        return list(self._tree)

    def get_note(self, note_id: str) -> Note:
        return self._require(note_id).copy()

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a listener called with a snapshot after every change.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    def _on_sync_state(self, state: SyncState) -> None:
        self._notify()

    # ==================== Fetch ====================

    async def fetch_notes(self) -> list[Note]:
        """Refresh the collection.

        Runs a full sync when operations are queued, loads from the remote
        store when online, and falls back to the local mirror otherwise.
        """
        self.loading = True
        self.error = None
        self._notify()
        try:
            if self.monitor.is_online and len(self.queue):
                await self.engine.sync()
            elif self.monitor.is_online:
                try:
                    notes = await asyncio.to_thread(self.repository.get_all)
                except ConnectivityError as e:
                    logger.warning(f"Fetch failed, using local notes: {e}")
                    self.error = str(e)
                    await self.monitor.check(force=True)
                except RemoteOperationError as e:
                    self.error = e.message
                    raise
                else:
                    self.replace_notes(notes)
                    self.engine.last_sync_at = utcnow()
                    self.cache.set_last_sync(self.engine.last_sync_at)
            elif not self._notes:
                self._notes = {note.id: note for note in self.cache.get_notes()}
                self._rebuild_tree()
        finally:
            self.loading = False
            self._notify()
        return [note.copy() for note in self._notes.values()]

    # ==================== Mutations ====================

    async def create_note(self, data: Union[CreateNoteInput, dict[str, Any]]) -> Note:
        """Create a note locally and send or queue it.

        Raises:
            NoteValidationError: If the input is invalid
            HierarchyError: If the parent is unknown or too deep
            RemoteOperationError: If the remote store rejected a direct create
        """
        data = self._coerce(CreateNoteInput, data)
        validate_move(self._notes, None, data.parent_id, self.max_hierarchy_depth)
        note_id = data.id or str(uuid.uuid4())
        if note_id in self._notes:
            raise NoteValidationError(f"Note id already exists: {note_id}")
        position = data.position
        if position is None:
            position = next_position(self._notes.values(), data.parent_id)
        data = data.model_copy(update={"id": note_id, "position": position})

        now = utcnow()
        note = Note(
            id=note_id,
            title=data.title,
            content=data.content,
            parent_id=data.parent_id,
            position=position,
            tags=list(data.tags),
            metadata=dict(data.metadata),
            sync_status=NoteSyncStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        note.refresh_stats()
        self._notes[note.id] = note
        self.selected_note_id = note.id
        self.error = None
        self._commit()

        remote = await self._dispatch(OfflineOperation.create(data))
        return self._current_copy(remote.id if remote else note_id, note)

    async def update_note(self, data: Union[UpdateNoteInput, dict[str, Any]]) -> Note:
        """Apply a partial update locally and send or queue it.

        Raises:
            NoteNotFoundError: If the note does not exist
            NoteValidationError: If the input is invalid
            HierarchyError: If the update moves the note to an invalid parent
            RemoteOperationError: If the remote store rejected a direct update
        """
        data = self._coerce(UpdateNoteInput, data)
        note = self._require(data.id)
        changes = data.changes()
        if not changes:
            return note.copy()

        if data.moves and data.parent_id != note.parent_id:
            validate_move(self._notes, note.id, data.parent_id, self.max_hierarchy_depth)
            if "position" not in changes:
                position = next_position(
                    (n for n in self._notes.values() if n.id != note.id), data.parent_id
                )
                data = data.model_copy(update={"position": position})
                changes["position"] = position

        for key, value in changes.items():
            setattr(note, key, value)
        if "content" in changes:
            note.refresh_stats()
        note.updated_at = utcnow()
        note.version += 1
        self.error = None
        self._commit()

        await self._dispatch(OfflineOperation.update(data))
        return self._current_copy(note.id, note)

    async def delete_note(self, note_id: str) -> bool:
        """Remove a note locally and send or queue the delete.

        Children are left in place and show up as roots.

        Raises:
            NoteNotFoundError: If the note does not exist
            RemoteOperationError: If the remote store rejected a direct delete
        """
        self._require(note_id)
        del self._notes[note_id]
        if self.selected_note_id == note_id:
            self.selected_note_id = None
        self.expanded_notes.discard(note_id)
        self._search_results = [i for i in self._search_results if i != note_id]
        self.error = None
        self._commit()

        await self._dispatch(OfflineOperation.delete(note_id))
        return True

    async def duplicate_note(self, note_id: str) -> Note:
        source = self._require(note_id)
        title = source.title[: MAX_TITLE_LENGTH - len(COPY_SUFFIX)] + COPY_SUFFIX
        return await self.create_note(
            CreateNoteInput(
                title=title,
                content=source.content,
                parent_id=source.parent_id,
                tags=list(source.tags),
                metadata=dict(source.metadata),
            )
        )

    async def move_note(
        self, note_id: str, new_parent_id: Optional[str], position: Optional[int] = None
    ) -> Note:
        """Move a note under a new parent (None for root), optionally at a position."""
        payload: dict[str, Any] = {"id": note_id, "parent_id": new_parent_id}
        if position is not None:
            payload["position"] = position
        return await self.update_note(payload)

    async def reorder_notes(self, parent_id: Optional[str], note_ids: list[str]) -> ReorderResult:
        """Place the given notes under parent_id at positions 0..n-1.

        Each note is updated on its own; failures are collected, not raised.
        """
        result = ReorderResult()
        for index, note_id in enumerate(note_ids):
            try:
                await self.update_note({"id": note_id, "parent_id": parent_id, "position": index})
            except NoteSyncError as e:
                logger.warning(f"Reorder of note {note_id} failed: {e}")
                result.failed[note_id] = str(e)
            else:
                result.updated.append(note_id)
        return result

    async def archive_note(self, note_id: str) -> Note:
        return await self.update_note({"id": note_id, "is_archived": True})

    async def unarchive_note(self, note_id: str) -> Note:
        return await self.update_note({"id": note_id, "is_archived": False})

    async def toggle_favorite(self, note_id: str) -> Note:
        note = self._require(note_id)
        return await self.update_note({"id": note_id, "is_favorite": not note.is_favorite})

    async def add_tag(self, note_id: str, tag: str) -> Note:
        note = self._require(note_id)
        tags = normalize_tags([tag])
        if not tags or tags[0] in note.tags:
            return note.copy()
        return await self.update_note({"id": note_id, "tags": note.tags + tags})

    async def remove_tag(self, note_id: str, tag: str) -> Note:
        note = self._require(note_id)
        if tag not in note.tags:
            return note.copy()
        return await self.update_note(
            {"id": note_id, "tags": [t for t in note.tags if t != tag]}
        )

    # ==================== Selection ====================

    def select_note(self, note_id: Optional[str]) -> None:
        if note_id is not None:
            self._require(note_id)
        self.selected_note_id = note_id
        self._notify()

    def select_next_note(self) -> Optional[str]:
        return self._step_selection(1)

    def select_previous_note(self) -> Optional[str]:
        return self._step_selection(-1)

    def _step_selection(self, step: int) -> Optional[str]:
        ids = list(self._notes)
        if not ids:
            return None
        if self.selected_note_id in self._notes:
            index = (ids.index(self.selected_note_id) + step) % len(ids)
        else:
            index = 0 if step > 0 else len(ids) - 1
        self.select_note(ids[index])
        return self.selected_note_id

    # ==================== Search and filters ====================

    def set_search_query(self, query: str) -> None:
        self.search_query = query
        self._notify()

    async def search(self, query: str) -> list[Note]:
        """Search notes remotely when online, locally otherwise.

        A connectivity failure falls back to the local search.

        Raises:
            RemoteOperationError: If the remote store rejected the query
        """
        if not query.strip():
            self.clear_search()
            return []
        self.search_query = query
        self.loading = True
        self._notify()
        try:
            ids = None
            if self.monitor.is_online:
                try:
                    hits = await asyncio.to_thread(self.repository.search, query)
                except ConnectivityError as e:
                    logger.warning(f"Remote search failed, searching locally: {e}")
                    await self.monitor.check(force=True)
                except RemoteOperationError as e:
                    self.error = e.message
                    raise
                else:
                    ids = [hit.id for hit in hits if hit.id in self._notes]
            if ids is None:
                ids = self._local_search(query)
            self._search_results = ids
        finally:
            self.loading = False
            self._notify()
        return [self._notes[note_id].copy() for note_id in self._search_results]

    def _local_search(self, query: str) -> list[str]:
        needle = query.lower()
        return [
            note.id
            for note in self._notes.values()
            if needle in note.title.lower()
            or needle in note.content.lower()
            or any(needle in tag.lower() for tag in note.tags)
        ]

    def clear_search(self) -> None:
        self.search_query = ""
        self._search_results = []
        self._notify()

    def set_filters(self, filters: Union[NotesFilter, dict[str, Any]]) -> NotesFilter:
        """Merge filter fields into the current filters."""
        try:
            if not isinstance(filters, NotesFilter):
                filters = NotesFilter.model_validate(filters)
            updates = filters.model_dump(include=filters.model_fields_set)
            current = self.filters.model_dump(include=self.filters.model_fields_set)
            self.filters = NotesFilter.model_validate({**current, **updates})
        except ValidationError as e:
            raise NoteValidationError(str(e)) from e
        self._notify()
        return self.filters

    def clear_filters(self) -> None:
        self.filters = NotesFilter()
        self._notify()

    def filtered_notes(self, filters: Optional[NotesFilter] = None) -> list[Note]:
        """Notes matching the filters (current filters by default), sorted and paged."""
        filters = filters or self.filters
        fields = filters.model_fields_set
        notes = [note for note in self._notes.values() if _matches(note, filters, fields)]
        notes.sort(
            key=lambda note: _sort_key(note, filters.sort_by),
            reverse=filters.sort_order == "desc",
        )
        end = filters.offset + filters.limit if filters.limit else None
        return [note.copy() for note in notes[filters.offset : end]]

    # ==================== View state ====================

    def expand_note(self, note_id: str) -> None:
        self.expanded_notes.add(note_id)
        self._persist_preferences()
        self._notify()

    def collapse_note(self, note_id: str) -> None:
        self.expanded_notes.discard(note_id)
        self._persist_preferences()
        self._notify()

    def toggle_note_expansion(self, note_id: str) -> bool:
        """Toggle and return whether the note is now expanded."""
        if note_id in self.expanded_notes:
            self.collapse_note(note_id)
            return False
        self.expand_note(note_id)
        return True

    def set_view_mode(self, mode: str) -> None:
        if mode not in VIEW_MODES:
            raise NoteValidationError(f"Unknown view mode: {mode}")
        self.view_mode = mode
        self._persist_preferences()
        self._notify()

    def set_sidebar_collapsed(self, collapsed: bool) -> None:
        self.sidebar_collapsed = collapsed
        self._persist_preferences()
        self._notify()

    def clear_error(self) -> None:
        self.error = None
        self.engine.clear_error()
        self._notify()

    # ==================== Sync ====================

    async def sync(self) -> bool:
        """Run a sync cycle now when online."""
        if not self.monitor.is_online:
            logger.info("Offline, sync skipped")
            return False
        return await self.engine.sync(manual=True)

    async def retry_failed_sync(self) -> bool:
        """Reset the retry counter and sync immediately."""
        return await self.engine.retry_now()

    def discard_operation(self, operation_id: str) -> bool:
        """Abandon one queued operation. The local note keeps its current state."""
        operation = self.queue.get(operation_id)
        if operation is None or not self.queue.remove(operation_id):
            return False
        logger.info(f"Discarded queued {operation.kind.value} for note {operation.note_id}")
        note = self._notes.get(operation.note_id)
        if note is not None and not self.queue.pending_for(note.id):
            note.sync_status = NoteSyncStatus.OFFLINE
        self._commit()
        return True

    def clear_offline_queue(self) -> int:
        """Abandon every queued operation."""
        count = self.queue.clear()
        for note in self._notes.values():
            if note.sync_status in (NoteSyncStatus.PENDING, NoteSyncStatus.ERROR):
                note.sync_status = NoteSyncStatus.OFFLINE
        self._commit()
        return count

    async def force_sync_note(self, note_id: str) -> Note:
        """Overwrite the remote record with the local one (last write wins).

        Raises:
            NoteNotFoundError: If the note does not exist locally
            ConnectivityError: If offline or the remote store is unreachable
            RemoteOperationError: If the remote store rejected the write
        """
        note = self._require(note_id)
        if not self.monitor.is_online:
            raise ConnectivityError("Cannot force sync while offline")
        data = UpdateNoteInput(
            id=note.id,
            title=note.title,
            content=note.content,
            parent_id=note.parent_id,
            position=note.position,
            is_archived=note.is_archived,
            is_favorite=note.is_favorite,
            tags=list(note.tags),
            metadata=dict(note.metadata),
        )
        operation = OfflineOperation.update(data)
        note.sync_status = NoteSyncStatus.SYNCING
        self._notify()
        async with self._direct_lock:
            self._in_flight.add(note_id)
            try:
                remote = await apply_operation(self.repository, operation)
            except NoteSyncError as e:
                note.sync_status = NoteSyncStatus.ERROR
                self.error = str(e)
                self._commit()
                raise
            finally:
                self._in_flight.discard(note_id)
            if self._refetching:
                self._written_during_refetch.add(note_id)
        self.operation_synced(operation, remote, self.queue.pending_for(note_id))
        return self._current_copy(note_id, note)

    # ==================== Routing ====================

    async def _dispatch(self, operation: OfflineOperation) -> Optional[Note]:
        """Send an operation directly or queue it.

        Returns:
            The authoritative note when a direct create/update succeeded
        """
        async with self._direct_lock:
            if (
                not self.monitor.is_online
                or len(self.queue)
                or self.engine.status == SyncStatus.SYNCING
            ):
                self._queue_operation(operation)
                if self.monitor.is_online:
                    self.engine.request_sync()
                return None

            note_id = operation.note_id
            self._set_note_status(note_id, NoteSyncStatus.SYNCING)
            self._in_flight.add(note_id)
            try:
                remote = await apply_operation(self.repository, operation)
            except ConnectivityError as e:
                logger.warning(f"Direct {operation.kind.value} failed, queued: {e}")
                self._queue_operation(operation)
                await self.monitor.check(force=True)
                return None
            except RemoteOperationError as e:
                logger.error(f"Remote store rejected {operation.kind.value}: {e.message}")
                self._queue_operation(operation, status=NoteSyncStatus.ERROR)
                self.error = e.message
                self._notify()
                raise
            finally:
                self._in_flight.discard(note_id)
            if self._refetching:
                self._written_during_refetch.add(remote.id if remote else note_id)

        if remote is not None and remote.id != note_id:
            self.queue.rebind(note_id, remote.id)
        self.operation_synced(
            operation, remote, self.queue.pending_for(remote.id if remote else note_id)
        )
        return remote

    def _queue_operation(
        self, operation: OfflineOperation, status: NoteSyncStatus = NoteSyncStatus.PENDING
    ) -> None:
        self.queue.enqueue(operation)
        self._set_note_status(operation.note_id, status)
        self._commit()

    # ==================== Sync target ====================

    def operation_started(self, operation: OfflineOperation) -> None:
        self._set_note_status(operation.note_id, NoteSyncStatus.SYNCING)
        self._notify()

    def operation_synced(
        self, operation: OfflineOperation, note: Optional[Note], still_pending: bool
    ) -> None:
        local_id = operation.note_id
        if operation.kind == OperationKind.DELETE or note is None:
            self._commit()
            return
        if note.id != local_id and local_id in self._notes:
            self._rebind_note(local_id, note.id)
        local = self._notes.get(note.id)
        if local is None:
            # Deleted locally while the call was in flight
            self._commit()
            return
        if still_pending:
            local.sync_status = NoteSyncStatus.PENDING
        else:
            remote = note.copy()
            remote.sync_status = NoteSyncStatus.SYNCED
            remote.last_sync_at = remote.last_sync_at or utcnow()
            self._notes[note.id] = remote
        self._commit()

    def operation_failed(self, operation: OfflineOperation, error: Exception) -> None:
        status = (
            NoteSyncStatus.PENDING
            if isinstance(error, ConnectivityError)
            else NoteSyncStatus.ERROR
        )
        self._set_note_status(operation.note_id, status)
        self._commit()

    def replace_notes(self, notes: list[Note]) -> None:
        """Adopt the remote collection, keeping local records with unsynced changes."""
        merged: dict[str, Note] = {}
        for note in notes:
            remote = note.copy()
            remote.sync_status = NoteSyncStatus.SYNCED
            merged[remote.id] = remote
        for note_id, local in self._notes.items():
            if (
                note_id in self._in_flight
                or note_id in self._written_during_refetch
                or self.queue.pending_for(note_id)
            ):
                merged[note_id] = local
        deleted = {op.note_id for op in self.queue.operations if op.kind == OperationKind.DELETE}
        # Written during the fetch but gone locally means deleted after the snapshot
        deleted.update(self._written_during_refetch - set(self._notes))
        self._written_during_refetch.clear()
        for note_id in deleted:
            merged.pop(note_id, None)
        self._notes = merged
        if self.selected_note_id not in self._notes:
            self.selected_note_id = None
        self._commit()

    # ==================== Helpers ====================

    @property
    def _refetching(self) -> bool:
        return self.loading or self.engine.status == SyncStatus.SYNCING

    def _rebind_note(self, old_id: str, new_id: str) -> None:
        """Replace a client id with the server-assigned id everywhere in local state."""
        rebuilt: dict[str, Note] = {}
        for note_id, note in self._notes.items():
            if note.parent_id == old_id:
                note.parent_id = new_id
            if note_id == old_id:
                note.id = new_id
                note_id = new_id
            rebuilt[note_id] = note
        self._notes = rebuilt
        if self.selected_note_id == old_id:
            self.selected_note_id = new_id
        if old_id in self.expanded_notes:
            self.expanded_notes.discard(old_id)
            self.expanded_notes.add(new_id)
        self._search_results = [new_id if i == old_id else i for i in self._search_results]

    def _set_note_status(self, note_id: str, status: NoteSyncStatus) -> None:
        note = self._notes.get(note_id)
        if note is not None:
            note.sync_status = status

    def _require(self, note_id: str) -> Note:
        note = self._notes.get(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        return note

    def _current_copy(self, note_id: str, fallback: Note) -> Note:
        note = self._notes.get(note_id, fallback)
        return note.copy()

    @staticmethod
    def _coerce(model: type[InputT], data: Union[InputT, dict[str, Any]]) -> InputT:
        if isinstance(data, model):
            return data
        return model.parse(dict(data))

    def _commit(self) -> None:
        """Persist the mirror, rebuild the tree and notify listeners."""
        self._persist_notes()
        self._rebuild_tree()
        self._notify()

    def _rebuild_tree(self) -> None:
        self._tree = build_tree(self._notes.values())

    def _persist_notes(self) -> None:
        if not self.cache.set_notes(list(self._notes.values())):
            logger.warning("Note mirror not persisted; continuing in memory")

    def _persist_preferences(self) -> None:
        self.cache.set_preferences(
            {
                "view_mode": self.view_mode,
                "sidebar_collapsed": self.sidebar_collapsed,
                "expanded_notes": sorted(self.expanded_notes),
            }
        )

    def _load_preferences(self) -> None:
        preferences = self.cache.get_preferences()
        view_mode = preferences.get("view_mode")
        if view_mode in VIEW_MODES:
            self.view_mode = view_mode
        self.sidebar_collapsed = bool(preferences.get("sidebar_collapsed", False))
        self.expanded_notes = set(preferences.get("expanded_notes") or [])


def open_local_cache(settings: Settings) -> LocalCache:
    """Open the SQLite cache, falling back to memory when it cannot be opened."""
    try:
        settings.database_path.parent.mkdir(parents=True, exist_ok=True)
        return SqliteLocalCache(settings.database_url)
    except (OSError, NoteSyncError) as e:
        logger.warning(f"Local cache unavailable ({e}); notes will not persist")
        return MemoryLocalCache()


def _matches(note: Note, filters: NotesFilter, fields: set[str]) -> bool:
    if filters.tags and not set(filters.tags) & set(note.tags):
        return False
    if filters.is_archived is not None and note.is_archived != filters.is_archived:
        return False
    if filters.is_favorite is not None and note.is_favorite != filters.is_favorite:
        return False
    # An explicit parent_id=None selects root notes
    if "parent_id" in fields and note.parent_id != filters.parent_id:
        return False
    if filters.created_after and note.created_at < filters.created_after:
        return False
    if filters.created_before and note.created_at > filters.created_before:
        return False
    if filters.updated_after and note.updated_at < filters.updated_after:
        return False
    if filters.updated_before and note.updated_at > filters.updated_before:
        return False
    return True


def _sort_key(note: Note, sort_by: str) -> Any:
    if sort_by == "title":
        return note.title.lower()
    if sort_by == "position":
        return note.position
    return getattr(note, sort_by)
