"""Connectivity detection: online/offline state and connection quality."""

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

import requests
from loguru import logger

from notesync.errors import ConnectivityError
from notesync.models.note import utcnow
from notesync.models.sync import ConnectionEvent, ConnectionQuality
from notesync.services.scheduler import CancelToken, Scheduler

ConnectionListener = Callable[[ConnectionEvent], Awaitable[None]]

HISTORY_SIZE = 50
MIN_PROBE_INTERVAL = 1.0


@runtime_checkable
class Probe(Protocol):
    """Active reachability check."""

    def measure(self) -> float:
        """Return round-trip latency in seconds.

        Raises:
            ConnectivityError: If the target cannot be reached
        """
        ...


class HttpProbe:
    """Probe issuing a HEAD request against a health endpoint.

    Args:
        url (str): URL to probe
        timeout (float): Request timeout in seconds
    """

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def measure(self) -> float:
        started = time.perf_counter()
        try:
            response = requests.head(self.url, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise ConnectivityError(f"Probe timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise ConnectivityError(f"Probe failed: {e}") from e
        if response.status_code >= 500:
            raise ConnectivityError(f"Probe returned HTTP {response.status_code}")
        return time.perf_counter() - started


class ConnectivityMonitor:
    """Tracks online state from native signals and active probes.

    A change in observed state must persist for ``debounce`` seconds before
    it is committed; listeners are notified once per committed change.
    The very first observation is committed immediately. No method raises:
    probe failures degrade to the offline status.

    Args:
        probe (Probe): Active reachability check
        scheduler (Scheduler): Timer source for debounce and periodic probes
        debounce (float): Seconds a change must persist before it is committed
        check_interval (float): Seconds between periodic probes after start()
        clock (Callable[[], float]): Monotonic clock used for probe throttling
    """

    def __init__(
        self,
        probe: Probe,
        scheduler: Scheduler,
        *,
        debounce: float = 1.0,
        check_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.probe = probe
        self.scheduler = scheduler
        self.debounce = debounce
        self.check_interval = check_interval
        self._clock = clock

        self._online: Optional[bool] = None
        self._quality = ConnectionQuality.OFFLINE
        self._pending: Optional[tuple[bool, ConnectionQuality]] = None
        self._debounce_token: Optional[CancelToken] = None
        self._periodic_token: Optional[CancelToken] = None
        self._last_probe_at: Optional[float] = None
        self._history: deque[ConnectionEvent] = deque(maxlen=HISTORY_SIZE)
        self._listeners: list[ConnectionListener] = []

    @property
    def is_online(self) -> bool:
        return bool(self._online)

    @property
    def quality(self) -> ConnectionQuality:
        return self._quality

    @property
    def history(self) -> list[ConnectionEvent]:
        """Most recent committed transitions, oldest first."""
        return list(self._history)

    def add_listener(self, listener: ConnectionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ConnectionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self) -> None:
        """Begin periodic probing."""
        if self._periodic_token is None or not self._periodic_token.active:
            self._periodic_token = self.scheduler.call_every(
                self.check_interval, self._periodic_check
            )

    def stop(self) -> None:
        """Cancel periodic probing and any pending debounce."""
        if self._periodic_token is not None:
            self._periodic_token.cancel()
            self._periodic_token = None
        self._cancel_debounce()

    async def check(self, *, force: bool = False) -> bool:
        """Run the active probe and fold the result into the status.

        Probes are throttled to one per second unless ``force`` is set;
        a throttled call returns the committed status.
        """
        now = self._clock()
        if (
            not force
            and self._last_probe_at is not None
            and now - self._last_probe_at < MIN_PROBE_INTERVAL
        ):
            return self.is_online
        self._last_probe_at = now

        try:
            latency = await asyncio.to_thread(self.probe.measure)
        except ConnectivityError as e:
            logger.debug(f"Connectivity probe failed: {e}")
            await self._observe(False, ConnectionQuality.OFFLINE)
            return False

        quality = ConnectionQuality.from_latency(latency)
        logger.debug(f"Connectivity probe ok in {latency * 1000:.0f} ms ({quality.value})")
        await self._observe(True, quality)
        return True

    async def report_native_status(self, online: bool) -> None:
        """Feed an OS or network-stack connectivity signal.

        Going offline is taken at face value; coming online is confirmed
        with a probe first.
        """
        if online:
            await self.check(force=True)
        else:
            await self._observe(False, ConnectionQuality.OFFLINE)

    async def _periodic_check(self) -> None:
        await self.check()

    async def _observe(self, online: bool, quality: ConnectionQuality) -> None:
        if self._online is None:
            await self._commit(online, quality)
            return

        if online == self._online:
            # Flapped back before the debounce elapsed
            self._cancel_debounce()
            self._quality = quality
            return

        if self._pending is not None and self._pending[0] == online:
            self._pending = (online, quality)
            return

        self._cancel_debounce()
        self._pending = (online, quality)
        if self.debounce <= 0:
            await self._commit_pending()
        else:
            self._debounce_token = self.scheduler.call_later(
                self.debounce, self._commit_pending
            )

    async def _commit_pending(self) -> None:
        self._debounce_token = None
        pending, self._pending = self._pending, None
        if pending is None or pending[0] == self._online:
            return
        await self._commit(*pending)

    async def _commit(self, online: bool, quality: ConnectionQuality) -> None:
        self._online = online
        self._quality = quality
        event = ConnectionEvent(timestamp=utcnow(), is_online=online, quality=quality)
        self._history.append(event)
        if online:
            logger.info(f"Connection restored ({quality.value})")
        else:
            logger.warning("Connection lost, working offline")

        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception("Connectivity listener failed")

    def _cancel_debounce(self) -> None:
        if self._debounce_token is not None:
            self._debounce_token.cancel()
            self._debounce_token = None
        self._pending = None
