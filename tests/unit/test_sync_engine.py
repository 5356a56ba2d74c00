"""Unit tests for SyncEngine."""

import asyncio

import pytest

from notesync.errors import RemoteOperationError
from notesync.models.inputs import CreateNoteInput, UpdateNoteInput
from notesync.models.operation import OfflineOperation
from notesync.models.sync import SyncStatus
from notesync.services.sync_engine import SyncEngine
from tests.unit.fakes import GatedNoteRepository


class RecordingTarget:
    """SyncTarget that records every callback."""

    def __init__(self):
        self.started = []
        self.synced = []
        self.failed = []
        self.replaced = None

    def operation_started(self, operation):
        self.started.append(operation.id)

    def operation_synced(self, operation, note, still_pending):
        self.synced.append((operation.id, note.id if note else None, still_pending))

    def operation_failed(self, operation, error):
        self.failed.append((operation.id, error))

    def replace_notes(self, notes):
        self.replaced = notes


@pytest.fixture
def target():
    return RecordingTarget()


def build_engine(repository, queue, monitor, scheduler, cache, target, **kwargs):
    options = dict(sync_interval=30.0, retry_base_delay=1.0, retry_max_attempts=3)
    options.update(kwargs)
    return SyncEngine(repository, queue, monitor, scheduler, cache, target, **options)


@pytest.fixture
def engine(repository, offline_queue, monitor, scheduler, note_cache, target):
    return build_engine(repository, offline_queue, monitor, scheduler, note_cache, target)


@pytest.fixture
def gated_repository():
    return GatedNoteRepository()


def queue_three(queue):
    ops = [
        OfflineOperation.create(CreateNoteInput(id="n1", title="One")),
        OfflineOperation.update(UpdateNoteInput(id="n1", content="Body")),
        OfflineOperation.create(CreateNoteInput(id="n2", title="Two")),
    ]
    for op in ops:
        queue.enqueue(op)
    return ops


class TestSyncCycle:
    """Tests for a single sync cycle."""

    def test_successful_cycle(self, engine, repository, offline_queue, note_cache, target):
        """Test drain, refetch and last-sync bookkeeping."""
        ops = queue_three(offline_queue)

        assert asyncio.run(engine.sync()) is True
        assert len(offline_queue) == 0
        assert [name for name, _ in repository.calls] == [
            "check_connection",
            "create",
            "update",
            "create",
            "get_all",
        ]
        assert target.started == [op.id for op in ops]
        assert {note.id for note in target.replaced} == {"n1", "n2"}
        assert engine.status == SyncStatus.SYNCED
        assert engine.last_sync_at is not None
        assert note_cache.get_last_sync() == engine.last_sync_at

    def test_still_pending_flag(self, engine, offline_queue, target):
        """Test that a note with later queued ops is reported as still pending."""
        queue_three(offline_queue)
        asyncio.run(engine.sync())
        assert [pending for _, _, pending in target.synced] == [True, False, False]

    def test_first_failure_keeps_queue_and_schedules_retry(
        self, engine, repository, offline_queue, scheduler, target
    ):
        """Test that a rejected head op keeps all three ops in order."""
        ops = queue_three(offline_queue)
        repository.fail_next("create", RemoteOperationError("rejected", status_code=400))

        assert asyncio.run(engine.sync()) is False
        assert [op.id for op in offline_queue.operations] == [op.id for op in ops]
        assert engine.status == SyncStatus.ERROR
        assert engine.retry_attempt == 1
        assert scheduler.one_shot_delays == [2.0]
        assert target.failed[0][0] == ops[0].id
        assert engine.state.last_error == "rejected"
        assert repository.calls_to("get_all") == []

    def test_unreachable_store_fails_before_drain(self, engine, repository, offline_queue):
        """Test that an unreachable store leaves the queue untouched."""
        queue_three(offline_queue)
        repository.reachable = False

        assert asyncio.run(engine.sync()) is False
        assert repository.calls_to("create") == []
        assert len(offline_queue) == 3
        assert engine.retry_scheduled

    def test_sync_in_progress_is_skipped(self, engine, repository):
        """Test that a second concurrent cycle does not start."""

        async def scenario():
            return await asyncio.gather(engine.sync(), engine.sync())

        assert asyncio.run(scenario()) == [True, False]
        assert len(repository.calls_to("check_connection")) == 1

    def test_server_assigned_id_rebinds_queue(self, engine, repository, offline_queue, target):
        """Test that later operations follow the id returned by create."""
        repository.assign_ids = {"tmp": "srv1"}
        offline_queue.enqueue(OfflineOperation.create(CreateNoteInput(id="tmp", title="P")))
        offline_queue.enqueue(OfflineOperation.update(UpdateNoteInput(id="tmp", title="P2")))

        assert asyncio.run(engine.sync()) is True
        assert repository.calls_to("update") == ["srv1"]
        assert repository.notes["srv1"].title == "P2"
        assert target.synced[0][1] == "srv1"

    def test_listeners_see_status_changes(self, engine):
        """Test that listeners observe syncing then synced."""
        statuses = []
        engine.add_listener(lambda state: statuses.append(state.status))
        asyncio.run(engine.sync())
        assert statuses == [SyncStatus.SYNCING, SyncStatus.SYNCED]

    def test_unexpected_error_moves_to_error_state(self, engine, repository, monitor, scheduler):
        """Test that a non-library exception fails the cycle instead of escaping."""
        repository.fail_next("get_all", ValueError("not json"))

        async def scenario():
            await monitor.check(force=True)
            assert await engine.sync() is False
            assert engine.status == SyncStatus.ERROR
            assert engine.state.last_error == "not json"
            assert scheduler.one_shot_delays == [2.0]
            await scheduler.advance(2.0)

        asyncio.run(scenario())
        assert engine.status == SyncStatus.SYNCED
        assert engine.retry_attempt == 0

    def test_unexpected_error_during_replay_reported_to_target(
        self, engine, repository, offline_queue, target
    ):
        """Test that a replay crash marks the operation failed and keeps the queue."""
        ops = queue_three(offline_queue)
        repository.fail_next("create", KeyError("id"))

        assert asyncio.run(engine.sync()) is False
        assert len(offline_queue) == 3
        assert target.failed[0][0] == ops[0].id
        assert isinstance(target.failed[0][1], KeyError)
        assert engine.status == SyncStatus.ERROR
        assert engine.retry_scheduled

    def test_cancelled_cycle_does_not_stay_syncing(
        self, gated_repository, offline_queue, monitor, scheduler, note_cache, target
    ):
        """Test that cancelling a running cycle leaves the engine able to sync again."""
        engine = build_engine(
            gated_repository, offline_queue, monitor, scheduler, note_cache, target
        )

        async def scenario():
            gated_repository.hold()
            task = asyncio.create_task(engine.sync())
            await asyncio.to_thread(gated_repository.entered.wait, 5)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            gated_repository.release.set()
            assert engine.status == SyncStatus.ERROR
            return await engine.sync()

        assert asyncio.run(scenario()) is True
        assert engine.status == SyncStatus.SYNCED


class TestRetry:
    """Tests for exponential retry and exhaustion."""

    def test_backoff_then_exhaustion(self, engine, repository, monitor, scheduler):
        """Test delays of 2, 4 and 8 seconds, then no further automatic retry."""
        repository.reachable = False
        delays = []

        async def scenario():
            await monitor.check(force=True)
            await engine.sync()
            for _ in range(3):
                delays.append(scheduler.one_shot_delays[0])
                await scheduler.advance(scheduler.one_shot_delays[0])

        asyncio.run(scenario())
        assert delays == [2.0, 4.0, 8.0]
        assert engine.retries_exhausted
        assert not engine.retry_scheduled
        assert "after 3 retries" in engine.state.last_error

    def test_automatic_triggers_ignored_after_exhaustion(
        self, engine, repository, monitor, scheduler
    ):
        """Test that only retry_now starts a cycle once retries are exhausted."""
        repository.reachable = False

        async def scenario():
            await monitor.check(force=True)
            await engine.sync()
            while scheduler.one_shot_delays:
                await scheduler.advance(scheduler.one_shot_delays[0])
            checks = len(repository.calls_to("check_connection"))

            engine.request_sync()
            await scheduler.advance(0)
            assert await engine.sync() is False
            assert len(repository.calls_to("check_connection")) == checks

            repository.reachable = True
            return await engine.retry_now()

        assert asyncio.run(scenario()) is True
        assert not engine.retries_exhausted
        assert engine.retry_attempt == 0
        assert engine.status == SyncStatus.SYNCED
        assert engine.state.last_error is None

    def test_success_resets_attempts(self, engine, repository, monitor, scheduler):
        """Test that a retry that succeeds clears the counter."""
        repository.reachable = False

        async def scenario():
            await monitor.check(force=True)
            await engine.sync()
            repository.reachable = True
            await scheduler.advance(2.0)

        asyncio.run(scenario())
        assert engine.retry_attempt == 0
        assert engine.status == SyncStatus.SYNCED

    def test_retry_skipped_while_offline(self, engine, repository, scheduler):
        """Test that a due retry does nothing when the monitor reports offline."""
        repository.reachable = False

        async def scenario():
            await engine.sync()
            calls = len(repository.calls)
            await scheduler.advance(2.0)
            return calls

        calls = asyncio.run(scenario())
        assert len(repository.calls) == calls


class TestTriggers:
    """Tests for connectivity-driven and periodic triggers."""

    def test_periodic_timer_follows_connectivity(self, engine, monitor, probe, scheduler):
        """Test that periodic sync runs only while online."""

        async def scenario():
            engine.start()
            assert not engine.periodic_active
            await monitor.check(force=True)
            assert scheduler.repeating_intervals == [30.0]
            probe.latency = None
            await monitor.check(force=True)

        asyncio.run(scenario())
        assert scheduler.repeating_intervals == []
        assert not engine.periodic_active

    def test_going_online_drains_queue(self, engine, monitor, offline_queue):
        """Test that reconnecting with queued ops starts a sync."""
        queue_three(offline_queue)

        async def scenario():
            engine.start()
            await monitor.check(force=True)

        asyncio.run(scenario())
        assert len(offline_queue) == 0
        assert engine.last_sync_at is not None

    def test_going_offline_cancels_retry(self, engine, repository, monitor, probe):
        """Test that an offline transition cancels a scheduled retry."""
        repository.reachable = False

        async def scenario():
            engine.start()
            await monitor.check(force=True)
            await engine.sync()
            assert engine.retry_scheduled
            probe.latency = None
            await monitor.check(force=True)

        asyncio.run(scenario())
        assert not engine.retry_scheduled

    def test_periodic_tick_runs_cycle(self, engine, repository, monitor, scheduler):
        """Test that the periodic timer runs a sync cycle."""

        async def scenario():
            engine.start()
            await monitor.check(force=True)
            await scheduler.advance(30.0)

        asyncio.run(scenario())
        assert len(repository.calls_to("get_all")) == 1

    def test_request_sync_coalesces(self, engine, repository, monitor, scheduler):
        """Test that repeated requests schedule one cycle."""

        async def scenario():
            await monitor.check(force=True)
            engine.request_sync()
            engine.request_sync()
            assert scheduler.one_shot_delays == [0]
            await scheduler.advance(0)

        asyncio.run(scenario())
        assert len(repository.calls_to("check_connection")) == 1

    def test_stop_cancels_timers(self, engine, monitor, scheduler):
        """Test that stop leaves no pending timers."""

        async def scenario():
            engine.start()
            await monitor.check(force=True)
            engine.request_sync()

        asyncio.run(scenario())
        engine.stop()
        assert scheduler.pending == []

    def test_reset(self, engine, repository):
        """Test that reset returns to the idle state."""
        repository.reachable = False
        asyncio.run(engine.sync())
        engine.reset()
        assert engine.status == SyncStatus.SYNCED
        assert engine.retry_attempt == 0
        assert not engine.retry_scheduled
        assert engine.last_sync_at is None

    def test_request_during_cycle_runs_after_it(
        self, gated_repository, offline_queue, monitor, scheduler, note_cache, target
    ):
        """Test that work queued mid-cycle is synced right after the cycle ends."""
        engine = build_engine(
            gated_repository, offline_queue, monitor, scheduler, note_cache, target
        )

        async def scenario():
            await monitor.check(force=True)
            gated_repository.hold()
            task = asyncio.create_task(engine.sync())
            await asyncio.to_thread(gated_repository.entered.wait, 5)
            offline_queue.enqueue(OfflineOperation.create(CreateNoteInput(id="late", title="L")))
            engine.request_sync()
            assert scheduler.one_shot_delays == []
            gated_repository.release.set()
            assert await task is True
            assert scheduler.one_shot_delays == [0]
            await scheduler.advance(0)

        asyncio.run(scenario())
        assert len(offline_queue) == 0
        assert "late" in gated_repository.notes


class TestSyncStats:
    """Tests for cycle counters and timings."""

    def test_counts_and_durations(
        self, repository, offline_queue, monitor, scheduler, note_cache, target
    ):
        """Test that executed cycles are counted and timed."""
        ticks = iter([10.0, 10.5, 20.0, 21.5])
        engine = build_engine(
            repository,
            offline_queue,
            monitor,
            scheduler,
            note_cache,
            target,
            clock=lambda: next(ticks),
        )

        async def scenario():
            assert await engine.sync() is True
            repository.reachable = False
            assert await engine.sync() is False

        asyncio.run(scenario())
        stats = engine.state.stats
        assert stats.total_syncs == 2
        assert stats.successful_syncs == 1
        assert stats.failed_syncs == 1
        assert stats.success_rate == 50.0
        assert stats.last_sync_duration == 1.5
        assert stats.average_sync_time == 1.0

    def test_skipped_cycles_not_counted(self, engine, repository, monitor, scheduler):
        """Test that cycles refused after exhaustion leave the counters alone."""
        repository.reachable = False

        async def scenario():
            await monitor.check(force=True)
            await engine.sync()
            while scheduler.one_shot_delays:
                await scheduler.advance(scheduler.one_shot_delays[0])
            total = engine.stats.total_syncs
            assert await engine.sync() is False
            return total

        total = asyncio.run(scenario())
        assert total == 4
        assert engine.stats.total_syncs == 4
        assert engine.stats.failed_syncs == 4
        assert engine.stats.success_rate == 0.0

    def test_reset_clears_stats(self, engine):
        """Test that reset starts the counters over."""
        asyncio.run(engine.sync())
        assert engine.stats.total_syncs == 1
        engine.reset()
        assert engine.stats.total_syncs == 0
        assert engine.state.stats.last_sync_duration == 0.0
