"""Error taxonomy shared by every storage backend.

Adapters translate native driver failures into these types at their boundary,
so callers branch on the exception class (and ``DuplicateKeyError.key``)
instead of reading driver messages.
"""

from __future__ import annotations

from enum import Enum


class UniqueKey(str, Enum):
    """Unique indexes the storage layer knows how to recover from."""

    USER_PUBLIC_ID = "users.public_id"
    USER_LEGACY_SYNC_CODE = "users.legacy_sync_code"
    DEVICE_PUBLIC_ID = "devices.public_id"
    DEVICE_LEGACY_DEVICE_ID = "devices.legacy_device_id"
    READ_MARK_IDENTIFIER = "articles.identifier"
    FEED_BLOB_USER = "legacy_feeds.user"


class SyncStoreError(Exception):
    """Base class for every error raised by the storage core."""


class NotFoundError(SyncStoreError):
    """Requested chain, device or blob does not exist."""


class ChainNotFoundError(NotFoundError):
    pass


class DeviceNotFoundError(NotFoundError):
    pass


class FeedNotFoundError(NotFoundError):
    pass


class PreconditionFailedError(SyncStoreError):
    """Conditional feed write did not match the stored version."""

    def __init__(self, message: str, *, current_etag: str | None = None) -> None:
        super().__init__(message)
        self.current_etag = current_etag


class InvalidArgumentError(SyncStoreError, ValueError):
    """Caller supplied malformed input; retrying without fixing it is pointless."""


class StorageError(SyncStoreError):
    """Backend failure that the protocol does not anticipate."""


class DeadlineExceededError(StorageError):
    """Operation was cancelled because its caller-supplied timeout elapsed."""


class DuplicateKeyError(StorageError):
    """Insert rejected by a known unique index."""

    def __init__(self, key: UniqueKey, message: str | None = None) -> None:
        super().__init__(message or f"duplicate key: {key.value}")
        self.key = key


class InternalError(SyncStoreError):
    """Stored state contradicts itself (for example a duplicate with no row)."""
