"""Domain models for sync chains, devices, read marks and the feed blob."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass(slots=True)
class User:
    """Chain identity shared by every device of a sync chain."""

    db_id: int
    public_id: str
    legacy_sync_code: str


@dataclass(slots=True)
class Device:
    """Device registered in a chain."""

    db_id: int
    public_id: str
    owner_user_db_id: int
    name: str
    legacy_device_id: int
    last_seen: datetime


@dataclass(slots=True)
class UserDevice:
    """User and one of its devices, as returned by registration and join."""

    user: User
    device: Device


@dataclass(slots=True)
class ReadMark:
    """Article identifier marked as read somewhere in the chain."""

    owner_user_db_id: int
    identifier: str
    read_time: datetime
    updated_at: datetime


@dataclass(slots=True)
class FeedBlob:
    """Current version of the shared feed configuration of a chain."""

    owner_user_db_id: int
    content_hash: int
    content: str
    etag: str


class ReadStatus(str, Enum):
    """Outcome of a conditional feed read."""

    MODIFIED = "modified"
    NOT_MODIFIED = "not_modified"


@dataclass(slots=True)
class ConditionalRead:
    """Result of ``read_if_none_match``; ``blob`` is set only when modified."""

    status: ReadStatus
    etag: str
    blob: FeedBlob | None = None


@dataclass(slots=True)
class TransferReport:
    """Counters collected while copying one store into another."""

    users_count: int = 0
    devices_count: int = 0
    feed_blobs_count: int = 0
    read_marks_count: int = 0
    read_marks_transferred: bool = False
    resumed_users: list[str] = field(default_factory=list)
    skipped_users: list[str] = field(default_factory=list)
