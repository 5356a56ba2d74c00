"""Ordered, durable log of mutations awaiting remote application."""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from loguru import logger

from notesync.database.local_cache import NoteCache
from notesync.errors import NoteSyncError, NoteValidationError
from notesync.models.operation import OfflineOperation

ApplyFn = Callable[[OfflineOperation], Awaitable[None]]


@dataclass
class DrainResult:
    """Outcome of one drain pass."""

    applied: list[OfflineOperation] = field(default_factory=list)
    failed: Optional[OfflineOperation] = None
    error: Optional[NoteSyncError] = None

    @property
    def ok(self) -> bool:
        return self.failed is None


class OfflineQueue:
    """FIFO queue of OfflineOperations mirrored to the local cache.

    Every change is persisted before the method returns. Draining applies
    operations from the head; the first failure stops the pass and leaves
    that operation (and everything behind it) in place.

    Args:
        cache (NoteCache): Persistence for the queue mirror
    """

    def __init__(self, cache: NoteCache):
        self.cache = cache
        self._operations: list[OfflineOperation] = []
        self._draining = False

    def __len__(self) -> int:
        return len(self._operations)

    @property
    def operations(self) -> tuple[OfflineOperation, ...]:
        return tuple(self._operations)

    @property
    def is_draining(self) -> bool:
        return self._draining

    def load(self) -> int:
        """Replace the in-memory queue with the persisted mirror.

        Returns:
            int: Number of operations loaded
        """
        operations = []
        for entry in self.cache.get_offline_queue():
            try:
                operations.append(OfflineOperation.from_dict(entry))
            except NoteValidationError as e:
                logger.warning(f"Skipping unreadable queued operation: {e}")
        self._operations = operations
        return len(operations)

    def enqueue(self, operation: OfflineOperation) -> OfflineOperation:
        self._operations.append(operation)
        self._persist()
        logger.debug(
            f"Queued {operation.kind.value} for note {operation.note_id} "
            f"({len(self._operations)} pending)"
        )
        return operation

    def remove(self, operation_id: str) -> bool:
        for index, operation in enumerate(self._operations):
            if operation.id == operation_id:
                del self._operations[index]
                self._persist()
                return True
        return False

    def clear(self) -> int:
        count = len(self._operations)
        self._operations = []
        self._persist()
        return count

    def get(self, operation_id: str) -> Optional[OfflineOperation]:
        for operation in self._operations:
            if operation.id == operation_id:
                return operation
        return None

    def pending_for(self, note_id: str, *, exclude: Optional[str] = None) -> bool:
        """Whether any queued operation (other than ``exclude``) targets the note."""
        return any(
            operation.note_id == note_id and operation.id != exclude
            for operation in self._operations
        )

    def rebind(self, old_id: str, new_id: str) -> int:
        """Rewrite queued references from a client id to a server-assigned id.

        Returns:
            int: Number of operations rewritten
        """
        if old_id == new_id:
            return 0
        count = 0
        for index, operation in enumerate(self._operations):
            rebound = operation.rebind(old_id, new_id)
            if rebound is not operation:
                self._operations[index] = rebound
                count += 1
        if count:
            self._persist()
            logger.debug(f"Rebound {count} queued operation(s) from {old_id} to {new_id}")
        return count

    async def drain(self, apply_fn: ApplyFn) -> DrainResult:
        """Apply queued operations in FIFO order until one fails.

        Args:
            apply_fn: Coroutine applying one operation remotely

        Returns:
            DrainResult: Applied operations and the first failure, if any
        """
        result = DrainResult()
        if self._draining:
            logger.debug("Drain already in progress")
            return result

        self._draining = True
        try:
            while self._operations:
                operation = self._operations[0]
                try:
                    await apply_fn(operation)
                except NoteSyncError as e:
                    result.failed = self.get(operation.id) or operation
                    result.error = e
                    logger.warning(
                        f"Queued {operation.kind.value} for note {operation.note_id} "
                        f"failed: {e}"
                    )
                    break
                # apply_fn may have rebound or discarded entries, so remove by id
                result.applied.append(self.get(operation.id) or operation)
                self.remove(operation.id)
        finally:
            self._draining = False
        return result

    def _persist(self) -> None:
        entries = [operation.to_dict() for operation in self._operations]
        if not self.cache.set_offline_queue(entries):
            logger.warning("Offline queue mirror not persisted; continuing in memory")
