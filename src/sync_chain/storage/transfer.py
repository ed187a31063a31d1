"""One-shot copy of every chain from one storage backend into another."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from sync_chain.errors import ChainNotFoundError, DuplicateKeyError, UniqueKey
from sync_chain.models import TransferReport, User
from sync_chain.storage.repository import SyncRepository

logger = logging.getLogger(__name__)

_USER_KEYS = (UniqueKey.USER_PUBLIC_ID, UniqueKey.USER_LEGACY_SYNC_CODE)
_DEVICE_KEYS = (UniqueKey.DEVICE_PUBLIC_ID, UniqueKey.DEVICE_LEGACY_DEVICE_ID)


def transfer_store(
    source: SyncRepository,
    destination: SyncRepository,
    *,
    transfer_read_marks: bool = False,
    progress_every: int = 100,
) -> TransferReport:
    """Replay ``source`` into an already migrated ``destination``.

    Users go first, then their devices, then feed blobs (and read marks when
    enabled). Owners are re-resolved by public id on the destination because
    surrogate keys differ between backends.

    Re-running after an interrupted transfer resumes it: a user already present
    with the same public id and sync code still gets its missing devices, blob
    and marks, and rows that are already there count as copied. A user whose
    keys clash with a *different* destination user is skipped with everything
    it owns.
    """

    report = TransferReport(read_marks_transferred=transfer_read_marks)
    progress_every = max(1, progress_every)

    for user in source.export_users():
        try:
            destination.import_user(user)
        except DuplicateKeyError as error:
            if error.key not in _USER_KEYS:
                raise
            if _is_same_user(destination, user):
                logger.info("User %s already in destination, resuming it.", user.public_id)
                report.resumed_users.append(user.public_id)
            else:
                logger.warning(
                    "User %s clashes with another destination user, skipping it.",
                    user.public_id,
                )
                report.skipped_users.append(user.public_id)
            continue
        report.users_count += 1
        _log_progress("users", report.users_count, progress_every)

    skipped = set(report.skipped_users)

    for user in _transferred_users(source, skipped):
        for device in source.export_devices_for_user(user):
            try:
                destination.import_device(user.public_id, device)
            except DuplicateKeyError as error:
                if error.key not in _DEVICE_KEYS:
                    raise
                logger.debug("Device %s already in destination.", device.public_id)
                continue
            report.devices_count += 1
            _log_progress("devices", report.devices_count, progress_every)

    for user in _transferred_users(source, skipped):
        blob = source.export_feed_blob(user)
        if blob is None:
            continue
        try:
            destination.import_feed_blob(user.public_id, blob)
        except DuplicateKeyError as error:
            if error.key is not UniqueKey.FEED_BLOB_USER:
                raise
            logger.debug("Feed blob of user %s already in destination.", user.public_id)
            continue
        report.feed_blobs_count += 1
        _log_progress("feed blobs", report.feed_blobs_count, progress_every)

    if transfer_read_marks:
        for user in _transferred_users(source, skipped):
            for mark in source.export_read_marks_for_user(user):
                if destination.import_read_mark(user.public_id, mark):
                    report.read_marks_count += 1
                    _log_progress("read marks", report.read_marks_count, progress_every)
    else:
        logger.info("Read marks are not transferred (SYNC_CHAIN_TRANSFER_READ_MARKS is off).")

    logger.info(
        "Transfer finished: users=%s devices=%s feed_blobs=%s read_marks=%s "
        "resumed_users=%s skipped_users=%s",
        report.users_count,
        report.devices_count,
        report.feed_blobs_count,
        report.read_marks_count,
        len(report.resumed_users),
        len(report.skipped_users),
    )
    return report


def _is_same_user(destination: SyncRepository, user: User) -> bool:
    try:
        existing = destination.get_user_by_public_id(user.public_id)
    except ChainNotFoundError:
        return False
    return existing.legacy_sync_code == user.legacy_sync_code


def _transferred_users(source: SyncRepository, skipped: set[str]) -> Iterator[User]:
    for user in source.export_users():
        if user.public_id not in skipped:
            yield user


def _log_progress(kind: str, count: int, every: int) -> None:
    if count % every == 0:
        logger.info("Transferred %s %s so far.", count, kind)
