"""Sync engine: queue draining, refetch, retry with backoff, periodic sync."""

import asyncio
import time
from datetime import datetime
from typing import Callable, Optional, Protocol

from loguru import logger

from notesync.database.local_cache import NoteCache
from notesync.errors import ConnectivityError, NoteSyncError, RetryExhaustedError
from notesync.models.note import Note, utcnow
from notesync.models.operation import OfflineOperation, OperationKind
from notesync.models.sync import ConnectionEvent, SyncState, SyncStats, SyncStatus
from notesync.services.connectivity import ConnectivityMonitor
from notesync.services.note_repository import NoteRepository
from notesync.services.offline_queue import OfflineQueue
from notesync.services.scheduler import CancelToken, Scheduler

SyncListener = Callable[[SyncState], None]


async def apply_operation(
    repository: NoteRepository, operation: OfflineOperation
) -> Optional[Note]:
    """Run one operation against the repository off the event loop.

    Returns:
        The authoritative note for create and update, None for delete
    """
    if operation.kind == OperationKind.CREATE:
        return await asyncio.to_thread(repository.create, operation.data)
    if operation.kind == OperationKind.UPDATE:
        return await asyncio.to_thread(repository.update, operation.data)
    await asyncio.to_thread(repository.delete, operation.note_id)
    return None


class SyncTarget(Protocol):
    """Receiver of per-operation progress and the refetched collection."""

    def operation_started(self, operation: OfflineOperation) -> None: ...

    def operation_synced(
        self, operation: OfflineOperation, note: Optional[Note], still_pending: bool
    ) -> None: ...

    def operation_failed(self, operation: OfflineOperation, error: Exception) -> None: ...

    def replace_notes(self, notes: list[Note]) -> None: ...


class SyncEngine:
    """Drives sync cycles between the offline queue and the remote store.

    A cycle checks reachability, drains the queue in order, refetches the
    authoritative collection and records the sync time. Only one cycle
    runs at a time. Failed cycles are retried after
    ``retry_base_delay * 2 ** attempt`` seconds until ``retry_max_attempts``
    is exceeded; after that only ``retry_now()`` starts a new cycle.

    Args:
        repository (NoteRepository): Remote store
        queue (OfflineQueue): Pending mutations
        monitor (ConnectivityMonitor): Source of online/offline transitions
        scheduler (Scheduler): Timer source for retries and periodic sync
        cache (NoteCache): Persistence for the last sync timestamp
        target (SyncTarget): Owner of the note collection
        sync_interval (float): Seconds between periodic cycles while online
        retry_base_delay (float): Base delay for retry backoff
        retry_max_attempts (int): Automatic retries before giving up
        clock (Callable[[], float]): Monotonic time source for cycle durations
    """

    def __init__(
        self,
        repository: NoteRepository,
        queue: OfflineQueue,
        monitor: ConnectivityMonitor,
        scheduler: Scheduler,
        cache: NoteCache,
        target: SyncTarget,
        *,
        sync_interval: float = 30.0,
        retry_base_delay: float = 1.0,
        retry_max_attempts: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.queue = queue
        self.monitor = monitor
        self.scheduler = scheduler
        self.cache = cache
        self.target = target
        self.sync_interval = sync_interval
        self.retry_base_delay = retry_base_delay
        self.retry_max_attempts = retry_max_attempts
        self.clock = clock

        self.last_sync_at: Optional[datetime] = None
        self._status = SyncStatus.SYNCED
        self._last_error: Optional[str] = None
        self._attempt = 0
        self._exhausted = False
        self._stats = SyncStats()
        self._retry_token: Optional[CancelToken] = None
        self._periodic_token: Optional[CancelToken] = None
        self._request_token: Optional[CancelToken] = None
        self._rerun_requested = False
        self._listeners: list[SyncListener] = []
        self._started = False

    # ==================== State ====================

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def retry_attempt(self) -> int:
        return self._attempt

    @property
    def retries_exhausted(self) -> bool:
        return self._exhausted

    @property
    def retry_scheduled(self) -> bool:
        return self._retry_token is not None and self._retry_token.active

    @property
    def periodic_active(self) -> bool:
        return self._periodic_token is not None and self._periodic_token.active

    @property
    def stats(self) -> SyncStats:
        return self._stats

    @property
    def state(self) -> SyncState:
        return SyncState(
            status=self._status,
            is_online=self.monitor.is_online,
            last_sync_at=self.last_sync_at,
            queue_length=len(self.queue),
            last_error=self._last_error,
            retry_attempt=self._attempt,
            retries_exhausted=self._exhausted,
            stats=self._stats,
        )

    def add_listener(self, listener: SyncListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SyncListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def clear_error(self) -> None:
        """Forget the last error message without touching retry bookkeeping."""
        self._last_error = None
        self._notify()

    def _set_status(self, status: SyncStatus) -> None:
        self._status = status
        self._notify()

    def _notify(self) -> None:
        state = self.state
        for listener in list(self._listeners):
            listener(state)

    # ==================== Lifecycle ====================

    def start(self) -> None:
        """Listen for connectivity changes and arm the periodic timer when online."""
        if self._started:
            return
        self._started = True
        self.monitor.add_listener(self._on_connection_change)
        if self.monitor.is_online:
            self._start_periodic()

    def stop(self) -> None:
        """Cancel every timer and stop listening. A running cycle is left to finish."""
        self._started = False
        self.monitor.remove_listener(self._on_connection_change)
        self._cancel_periodic()
        self._cancel_retry()
        if self._request_token is not None:
            self._request_token.cancel()
            self._request_token = None

    def reset(self) -> None:
        """Return to the initial idle state."""
        self._cancel_retry()
        self._status = SyncStatus.SYNCED
        self._last_error = None
        self._attempt = 0
        self._exhausted = False
        self.last_sync_at = None
        self._rerun_requested = False
        self._stats = SyncStats()
        self._notify()

    # ==================== Triggers ====================

    async def _on_connection_change(self, event: ConnectionEvent) -> None:
        if event.is_online:
            self._start_periodic()
            if len(self.queue) and not self._exhausted:
                logger.info(f"Back online with {len(self.queue)} queued operation(s)")
                await self.sync()
        else:
            self._cancel_periodic()
            self._cancel_retry()
        self._notify()

    def request_sync(self) -> None:
        """Ask for a cycle on the next loop iteration.

        A request made while a cycle is running is held until that cycle
        finishes, so changes queued mid-cycle are not left for the
        periodic timer.
        """
        if self._status == SyncStatus.SYNCING:
            self._rerun_requested = True
            return
        if self._request_token is not None and self._request_token.active:
            return
        self._request_token = self.scheduler.call_later(0, self._run_requested)

    async def _run_requested(self) -> None:
        self._request_token = None
        await self._auto_sync()

    async def _run_periodic(self) -> None:
        await self._auto_sync()

    async def _run_retry(self) -> None:
        self._retry_token = None
        await self._auto_sync()

    async def _auto_sync(self) -> None:
        if not self.monitor.is_online or self._exhausted:
            return
        await self.sync()

    async def retry_now(self) -> bool:
        """Reset the retry counter and run a cycle immediately."""
        self._attempt = 0
        self._exhausted = False
        self._cancel_retry()
        return await self.sync(manual=True)

    # ==================== Cycle ====================

    async def sync(self, *, manual: bool = False) -> bool:
        """Run one sync cycle.

        Never raises: any failure, expected or not, moves the engine to the
        error state and schedules a retry.

        Returns:
            True if the cycle completed, False if it failed or was skipped
        """
        if self._status == SyncStatus.SYNCING:
            logger.debug("Sync already in progress, skipping")
            return False
        if self._exhausted and not manual:
            logger.debug("Retries exhausted, waiting for manual retry")
            return False

        self._cancel_retry()
        self._set_status(SyncStatus.SYNCING)
        started = self.clock()
        try:
            await self._run_cycle()
        except NoteSyncError as e:
            self._record(started, success=False)
            self._on_failure(e)
            return False
        except Exception as e:
            logger.exception(f"Unexpected error during sync: {e!r}")
            self._record(started, success=False)
            self._on_failure(e)
            return False
        else:
            self._record(started, success=True)
            self._attempt = 0
            self._exhausted = False
            self._last_error = None
            self._set_status(SyncStatus.SYNCED)
            logger.info("Sync complete")
            if self._rerun_requested and len(self.queue):
                self.request_sync()
            return True
        finally:
            self._rerun_requested = False
            if self._status == SyncStatus.SYNCING:
                # Cancelled mid-cycle
                self._last_error = "Sync was interrupted"
                self._set_status(SyncStatus.ERROR)

    def _record(self, started: float, success: bool) -> None:
        self._stats = self._stats.record(max(self.clock() - started, 0.0), success)

    async def _run_cycle(self) -> None:
        logger.debug("Sync: checking remote reachability")
        reachable = await asyncio.to_thread(self.repository.check_connection)
        if not reachable:
            raise ConnectivityError("Remote note store is unreachable")

        if len(self.queue):
            logger.info(f"Sync: replaying {len(self.queue)} queued operation(s)")
        result = await self.queue.drain(self._apply)
        if not result.ok and result.error is not None:
            raise result.error

        logger.debug("Sync: refetching notes")
        notes = await asyncio.to_thread(self.repository.get_all)
        self.target.replace_notes(notes)

        self.last_sync_at = utcnow()
        self.cache.set_last_sync(self.last_sync_at)

    async def _apply(self, operation: OfflineOperation) -> None:
        self.target.operation_started(operation)
        try:
            note = await apply_operation(self.repository, operation)
        except Exception as e:
            self.target.operation_failed(operation, e)
            raise

        if note is not None and note.id != operation.note_id:
            self.queue.rebind(operation.note_id, note.id)
        note_id = note.id if note is not None else operation.note_id
        still_pending = self.queue.pending_for(note_id, exclude=operation.id)
        self.target.operation_synced(operation, note, still_pending)

    def _on_failure(self, error: Exception) -> None:
        self._attempt += 1
        if self._attempt <= self.retry_max_attempts:
            delay = self.retry_base_delay * 2**self._attempt
            self._last_error = str(error)
            self._retry_token = self.scheduler.call_later(delay, self._run_retry)
            logger.warning(
                f"Sync failed: {error}. Retry {self._attempt}/{self.retry_max_attempts} "
                f"in {delay:.1f}s"
            )
        else:
            self._exhausted = True
            exhausted = RetryExhaustedError(self.retry_max_attempts, str(error))
            self._last_error = str(exhausted)
            logger.error(f"{exhausted}. Use a manual retry to try again")
        self._set_status(SyncStatus.ERROR)

    # ==================== Timers ====================

    def _start_periodic(self) -> None:
        if not self.periodic_active:
            self._periodic_token = self.scheduler.call_every(
                self.sync_interval, self._run_periodic
            )

    def _cancel_periodic(self) -> None:
        if self._periodic_token is not None:
            self._periodic_token.cancel()
            self._periodic_token = None

    def _cancel_retry(self) -> None:
        if self._retry_token is not None:
            self._retry_token.cancel()
            self._retry_token = None
