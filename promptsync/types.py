"""
Shared types for promptsync.

Records and tags are the vocabulary shared by the local store, the remote
client and the reconciliation engine. The sync plan and result types live
here too, so that every layer can speak about actions and outcomes without
importing the engine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from uuid6 import uuid7

# Default color for tags that arrive without one (remote tags carry names only)
DEFAULT_TAG_COLOR = "#6366f1"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


# === Shared Utility Functions ===


def new_id() -> str:
    """Generate a time-ordered identifier (UUID version 7)."""
    return str(uuid7())


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_millis(dt: datetime) -> int:
    """Milliseconds since the epoch, the resolution the remote table stores."""
    return (ensure_utc(dt) - _EPOCH) // _ONE_MS


# Range of millisecond values that from_millis can turn into a datetime
MIN_MILLIS = to_millis(datetime.min.replace(tzinfo=timezone.utc))
MAX_MILLIS = to_millis(datetime.max.replace(tzinfo=timezone.utc))


def from_millis(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=int(ms))


def truncate_millis(dt: datetime) -> datetime:
    """Drop sub-millisecond precision so local and remote copies compare equal."""
    return from_millis(to_millis(dt))


def utc_now() -> datetime:
    """Current UTC time, truncated to milliseconds."""
    return truncate_millis(datetime.now(timezone.utc))


def parse_datetime(s: Optional[str], *, strict: bool = False) -> Optional[datetime]:
    """Parse an ISO datetime string into an aware UTC datetime."""
    if not s:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(s.replace("Z", "+00:00")))
    except (TypeError, ValueError):
        if strict:
            raise
        return None


# === Exceptions ===


class PromptSyncError(Exception):
    """Base class for promptsync errors."""


class ConfigurationError(PromptSyncError):
    """Missing or invalid credentials / table location."""


class RecordNotFoundError(PromptSyncError):
    """A record id does not exist in the local store."""

    def __init__(self, record_id: str):
        super().__init__(f"Record not found: {record_id}")
        self.record_id = record_id


class RemoteError(PromptSyncError):
    """Failure talking to the remote table."""


class TransportError(RemoteError):
    """Network, timeout or HTTP-level failure. Safe to retry for idempotent calls."""


class RemoteApiError(RemoteError):
    """The remote service answered with a non-zero business code."""

    def __init__(self, code: int, msg: str):
        super().__init__(f"Remote API error {code}: {msg}")
        self.code = code
        self.msg = msg


# === Entities ===


@dataclass
class Tag:
    """A user-defined label. ``name`` is unique within the local store."""

    name: str
    id: Optional[str] = None  # None until resolved against the store
    color: str = DEFAULT_TAG_COLOR


@dataclass
class Record:
    """A prompt: titled, tagged text content. The unit of synchronization."""

    id: str
    title: str
    content: str
    created_at: datetime
    updated_at: datetime
    tags: List[Tag] = field(default_factory=list)
    is_favorite: bool = False
    last_used_at: Optional[datetime] = None
    # Remote row id (Bitable record_id). Only set on records read from the remote table.
    remote_ref: Optional[str] = None

    @property
    def tag_names(self) -> List[str]:
        return [tag.name for tag in self.tags]

    @property
    def effective_last_used(self) -> datetime:
        """Last use time, falling back to creation time when never used."""
        return self.last_used_at or self.created_at

    @property
    def version_key(self) -> Tuple[int, int]:
        """Ordering key for conflict resolution: updated_at, then last use."""
        return (to_millis(self.updated_at), to_millis(self.effective_last_used))


# === Sync Plan ===


class SyncAction(str, Enum):
    """What reconciliation decided to do with one record."""

    CREATE_REMOTE = "create_remote"
    UPDATE_REMOTE = "update_remote"
    CREATE_LOCAL = "create_local"
    UPDATE_LOCAL = "update_local"
    NOOP = "noop"


@dataclass
class PlannedAction:
    """A single classified record.

    ``record`` is the winning version: the local copy for remote-side actions,
    the remote copy for local-side actions.
    """

    action: SyncAction
    record: Record
    remote_ref: Optional[str] = None  # Row to overwrite for UPDATE_REMOTE

    def __str__(self) -> str:
        return f"{self.action.value}: {self.record.title} ({self.record.id})"


@dataclass
class ActionSet:
    """The full plan for one reconciliation run."""

    create_remote: List[PlannedAction] = field(default_factory=list)
    update_remote: List[PlannedAction] = field(default_factory=list)
    create_local: List[PlannedAction] = field(default_factory=list)
    update_local: List[PlannedAction] = field(default_factory=list)
    noop: List[str] = field(default_factory=list)  # Record ids already consistent

    def add(self, planned: PlannedAction) -> None:
        if planned.action is SyncAction.NOOP:
            self.noop.append(planned.record.id)
        else:
            getattr(self, planned.action.value).append(planned)

    def of(self, action: SyncAction) -> List[PlannedAction]:
        if action is SyncAction.NOOP:
            raise ValueError("NOOP entries are tracked by id only")
        return getattr(self, action.value)

    def __iter__(self) -> Iterator[PlannedAction]:
        yield from self.create_remote
        yield from self.update_remote
        yield from self.create_local
        yield from self.update_local

    @property
    def total(self) -> int:
        """Size of the union of ids examined."""
        return (
            len(self.create_remote)
            + len(self.update_remote)
            + len(self.create_local)
            + len(self.update_local)
            + len(self.noop)
        )

    @property
    def is_empty(self) -> bool:
        return self.total == len(self.noop)

    def counts(self) -> Dict[str, int]:
        return {
            "create_remote": len(self.create_remote),
            "update_remote": len(self.update_remote),
            "create_local": len(self.create_local),
            "update_local": len(self.update_local),
            "noop": len(self.noop),
        }


@dataclass
class RecordOutcome:
    """Per-record result of a batch call or a local materialization."""

    record_id: str
    ok: bool
    error: Optional[str] = None
    remote_ref: Optional[str] = None


@dataclass
class MaterializeRequest:
    """Ask the local side to write a remote-origin record."""

    action: SyncAction  # CREATE_LOCAL or UPDATE_LOCAL
    record: Record
    tag_names: List[str] = field(default_factory=list)


@dataclass
class SyncResult:
    """Summary of one reconciliation run."""

    local_created: int = 0
    local_updated: int = 0
    remote_created: int = 0
    remote_updated: int = 0
    total_processed: int = 0  # Distinct record ids examined
    failed: int = 0  # Per-record failures (counted as neither created nor updated)
    cancelled: bool = False
    message: str = ""
    errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return not self.errors and not self.cancelled

    @property
    def applied(self) -> int:
        return self.local_created + self.local_updated + self.remote_created + self.remote_updated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "local_created": self.local_created,
            "local_updated": self.local_updated,
            "remote_created": self.remote_created,
            "remote_updated": self.remote_updated,
            "total_processed": self.total_processed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def summary(self) -> str:
        """Human-readable summary."""
        lines = [
            self.message or ("Sync succeeded" if self.success else "Sync failed"),
            f"Remote → local: {self.local_created} created, {self.local_updated} updated",
            f"Local → remote: {self.remote_created} created, {self.remote_updated} updated",
            f"Records examined: {self.total_processed}",
        ]
        if self.failed:
            lines.append(f"Failed records: {self.failed}")
        if self.cancelled:
            lines.append("Run was cancelled before all batches completed")
        return "\n".join(lines)
