"""Backend-agnostic rules for identities, etags and conditional feed writes.

Nothing in this module touches a database. Storage adapters call these helpers
to decide *which* statement to run; the statements themselves enforce the
outcome atomically.
"""

from __future__ import annotations

import hashlib
import secrets
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from uuid import uuid4

from sync_chain.errors import InvalidArgumentError

LEGACY_SYNC_CODE_LENGTH = 64
LEGACY_SYNC_CODE_PREFIX = "feed"
WILDCARD_ETAG = "*"
WEAK_ETAG_PREFIX = "W/"


class PreconditionKind(str, Enum):
    """Conditions a feed writer can attach to a write."""

    ANY = "any"
    IF_MATCH = "if_match"
    IF_MATCH_ANY = "if_match_any"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class Precondition:
    kind: PreconditionKind
    etag: str | None = None

    def __post_init__(self) -> None:
        if self.kind is PreconditionKind.IF_MATCH and not self.etag:
            raise InvalidArgumentError("IF_MATCH precondition requires an etag")


ANY = Precondition(PreconditionKind.ANY)
IF_MATCH_ANY = Precondition(PreconditionKind.IF_MATCH_ANY)
NO_PRECONDITION = Precondition(PreconditionKind.NONE)


def if_match(etag: str) -> Precondition:
    return Precondition(PreconditionKind.IF_MATCH, etag)


class FeedWriteStrategy(str, Enum):
    """Statement shape used to apply a conditional feed write."""

    UPSERT = "upsert"
    COMPARE_AND_SWAP_OR_CREATE = "compare_and_swap_or_create"
    UPDATE_EXISTING = "update_existing"
    CREATE_ONLY = "create_only"


_STRATEGIES = {
    PreconditionKind.ANY: FeedWriteStrategy.UPSERT,
    PreconditionKind.IF_MATCH: FeedWriteStrategy.COMPARE_AND_SWAP_OR_CREATE,
    PreconditionKind.IF_MATCH_ANY: FeedWriteStrategy.UPDATE_EXISTING,
    PreconditionKind.NONE: FeedWriteStrategy.CREATE_ONLY,
}


def write_strategy(precondition: Precondition) -> FeedWriteStrategy:
    """Map a precondition to the write shape that enforces it.

    - ``ANY`` always writes.
    - ``IF_MATCH`` swaps only when the stored etag matches; a missing blob is
      created, since absence is not a mismatch.
    - ``IF_MATCH_ANY`` needs an existing blob.
    - ``NONE`` may only create; overwriting a blob the writer never read is a
      conflict.
    """

    return _STRATEGIES[precondition.kind]


def precondition_from_header(value: str | None) -> Precondition:
    """Translate an ``If-Match`` header value into a precondition."""

    if value is None:
        return NO_PRECONDITION
    stripped = value.strip()
    if not stripped:
        return NO_PRECONDITION
    if stripped == WILDCARD_ETAG:
        return IF_MATCH_ANY
    return if_match(stripped)


def strip_weak_prefix(etag: str) -> str:
    if etag.startswith(WEAK_ETAG_PREFIX):
        return etag[len(WEAK_ETAG_PREFIX) :]
    return etag


def etag_variants(etag: str) -> tuple[str, str]:
    """Strong and weak spellings of the same etag, for SQL ``IN`` matching."""

    strong = strip_weak_prefix(etag)
    return strong, f"{WEAK_ETAG_PREFIX}{strong}"


def etags_match(request_etag: str, current_etag: str) -> bool:
    """Compare etags ignoring the weak prefix on either side."""

    return strip_weak_prefix(request_etag) == strip_weak_prefix(current_etag)


def is_not_modified(request_etag: str | None, current_etag: str) -> bool:
    """``If-None-Match`` check for reads; the wildcard never matches here."""

    if request_etag is None or request_etag.strip() in ("", WILDCARD_ETAG):
        return False
    return etags_match(request_etag.strip(), current_etag)


def new_feed_etag() -> str:
    """Fresh version token for a feed write; never derived from content."""

    return f'{WEAK_ETAG_PREFIX}"{secrets.token_hex(16)}"'


def new_public_id() -> str:
    return str(uuid4())


def generate_legacy_sync_code() -> str:
    code = f"{LEGACY_SYNC_CODE_PREFIX}{secrets.token_hex(30)}"
    validate_legacy_sync_code(code)
    return code


def validate_legacy_sync_code(code: str) -> None:
    if len(code) != LEGACY_SYNC_CODE_LENGTH:
        raise InvalidArgumentError(
            f"Legacy sync code must be {LEGACY_SYNC_CODE_LENGTH} characters, got {len(code)}.",
        )


def generate_legacy_device_id() -> int:
    # Non-negative signed 64-bit value.
    return secrets.randbits(63)


def validate_legacy_device_id(device_id: int) -> None:
    if not -(2**63) <= device_id < 2**63:
        raise InvalidArgumentError(f"Legacy device id out of int64 range: {device_id}")


def devices_fingerprint(device_public_ids: Iterable[str]) -> str:
    """Stable token over chain membership.

    Only the device ids and their count take part, so liveness updates leave the
    token unchanged while joins and removals always change it.
    """

    ids = sorted(device_public_ids)
    digest = hashlib.sha256()
    digest.update(str(len(ids)).encode("ascii"))
    for device_id in ids:
        digest.update(b"\x00")
        digest.update(device_id.encode("utf-8"))
    return f'{WEAK_ETAG_PREFIX}"{digest.hexdigest()}"'
