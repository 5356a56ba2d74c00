"""Sync and connectivity status models."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional


class SyncStatus(str, Enum):
    """Whole-store sync activity."""

    SYNCED = "synced"  # Idle, last cycle succeeded (or none needed)
    SYNCING = "syncing"  # A cycle is in flight
    ERROR = "error"  # Last cycle failed


class ConnectionQuality(str, Enum):
    """Best-effort classification of the current connection."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    OFFLINE = "offline"

    @classmethod
    def from_latency(cls, latency: float) -> "ConnectionQuality":
        """Classify a probe round-trip time given in seconds."""
        millis = latency * 1000
        if millis < 100:
            return cls.EXCELLENT
        if millis < 300:
            return cls.GOOD
        if millis < 600:
            return cls.FAIR
        return cls.POOR


@dataclass(frozen=True)
class ConnectionEvent:
    """A committed connectivity transition."""

    timestamp: datetime
    is_online: bool
    quality: ConnectionQuality


@dataclass(frozen=True)
class SyncStats:
    """Running counters over executed sync cycles.

    Durations are in seconds. Skipped cycles (one already running, or
    retries exhausted) are not counted.
    """

    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    last_sync_duration: float = 0.0
    average_sync_time: float = 0.0

    @property
    def success_rate(self) -> float:
        """Percentage of cycles that succeeded, 0 before the first cycle."""
        if not self.total_syncs:
            return 0.0
        return self.successful_syncs / self.total_syncs * 100

    def record(self, duration: float, success: bool) -> "SyncStats":
        """Return the counters with one more finished cycle folded in."""
        total = self.total_syncs + 1
        return replace(
            self,
            total_syncs=total,
            successful_syncs=self.successful_syncs + (1 if success else 0),
            failed_syncs=self.failed_syncs + (0 if success else 1),
            last_sync_duration=duration,
            average_sync_time=(self.average_sync_time * self.total_syncs + duration) / total,
        )


@dataclass(frozen=True)
class SyncState:
    """Snapshot of the sync engine exposed to presentation layers."""

    status: SyncStatus
    is_online: bool
    last_sync_at: Optional[datetime]
    queue_length: int
    last_error: Optional[str] = None
    retry_attempt: int = 0
    retries_exhausted: bool = False
    stats: SyncStats = field(default_factory=SyncStats)
