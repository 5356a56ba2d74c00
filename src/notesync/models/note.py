"""Note model for Notesync."""

import copy
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

WORDS_PER_MINUTE = 200


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as an ISO-8601 string."""
    if value is None:
        return None
    return value.isoformat()


class NoteSyncStatus(str, Enum):
    """Sync state of a single note."""

    SYNCED = "synced"  # Matches the remote store
    PENDING = "pending"  # Local change waiting in the offline queue
    SYNCING = "syncing"  # Operation currently being applied remotely
    ERROR = "error"  # Remote store rejected the last operation
    OFFLINE = "offline"  # Known only locally, no remote attempt yet


def compute_stats(content: str) -> tuple[int, int, int]:
    """Return (word_count, character_count, estimated_read_time) for content."""
    word_count = len(content.split())
    character_count = len(content)
    read_time = max(1, math.ceil(word_count / WORDS_PER_MINUTE))
    return word_count, character_count, read_time


@dataclass
class Note:
    """A hierarchical note record."""

    id: str
    title: str
    content: str = ""
    summary: str = ""

    # Hierarchy
    parent_id: Optional[str] = None
    position: int = 0

    # Flags
    is_archived: bool = False
    is_favorite: bool = False
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    # Derived statistics
    word_count: int = 0
    character_count: int = 0
    estimated_read_time: int = 1

    # Sync bookkeeping
    sync_status: NoteSyncStatus = NoteSyncStatus.SYNCED
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_sync_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        """Validate and convert fields after initialization."""
        if isinstance(self.sync_status, str):
            self.sync_status = NoteSyncStatus(self.sync_status)

    def refresh_stats(self) -> None:
        """Recompute the derived statistics from content."""
        self.word_count, self.character_count, self.estimated_read_time = compute_stats(
            self.content
        )

    def copy(self) -> "Note":
        """Return a deep copy that shares no mutable state with this note."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON-compatible mirror layout."""
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "summary": self.summary,
            "parent_id": self.parent_id,
            "position": self.position,
            "is_archived": self.is_archived,
            "is_favorite": self.is_favorite,
            "tags": list(self.tags),
            "metadata": copy.deepcopy(self.metadata),
            "word_count": self.word_count,
            "character_count": self.character_count,
            "estimated_read_time": self.estimated_read_time,
            "sync_status": self.sync_status.value,
            "version": self.version,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "last_sync_at": format_datetime(self.last_sync_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Note":
        """Build a note from the mirror layout or a remote API payload.

        Missing statistics are derived from content.
        """
        content = data.get("content") or ""
        word_count, character_count, read_time = compute_stats(content)
        created_at = parse_datetime(data.get("created_at")) or utcnow()
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            content=content,
            summary=data.get("summary") or "",
            parent_id=data.get("parent_id") or None,
            position=int(data.get("position") or 0),
            is_archived=bool(data.get("is_archived", False)),
            is_favorite=bool(data.get("is_favorite", False)),
            tags=list(data.get("tags") or []),
            metadata=dict(data.get("metadata") or {}),
            word_count=int(data.get("word_count", word_count) or 0),
            character_count=int(data.get("character_count", character_count) or 0),
            estimated_read_time=int(data.get("estimated_read_time", read_time) or 1),
            sync_status=data.get("sync_status") or NoteSyncStatus.SYNCED,
            version=int(data.get("version") or 1),
            created_at=created_at,
            updated_at=parse_datetime(data.get("updated_at")) or created_at,
            last_sync_at=parse_datetime(data.get("last_sync_at")),
        )


@dataclass(frozen=True)
class SearchHit:
    """A ranked search result from the remote store."""

    id: str
    title: str
    rank: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchHit":
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            rank=float(data.get("rank") or 0.0),
        )
