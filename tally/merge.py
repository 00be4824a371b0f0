"""
Merge engine: reconcile two replicas of a category blob.

For every key in the remote mapping:
- absent locally: the remote record is taken as is
- remote entry is not an object, or (when the record kind is known) would
  not decode as one: skipped, never overwrites local data
- remote carries a `deleted_at` tombstone: copied onto the local record,
  leaving every other local field untouched, whatever the timestamps say
- otherwise: remote replaces local wholesale if its `updated_at` is
  strictly later; if either timestamp is missing or malformed, local stays

Keys missing from remote are kept: omission means "not seen there yet",
never "deleted there". Deletions travel only as tombstones.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import DecodeError, StaleNoteError, TimestampParseError
from .protocol import BackendProtocol, DocumentStoreProtocol
from .types import Kind, decode_blob, dump_blob, load_blob, parse_timestamp, record_class

logger = logging.getLogger(__name__)


@dataclass
class MergeStats:
    """What a merge changed in the local mapping."""
    added: list[str] = field(default_factory=list)
    replaced: list[str] = field(default_factory=list)
    tombstoned: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.replaced or self.tombstoned)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "added": self.added,
            "replaced": self.replaced,
            "tombstoned": self.tombstoned,
            "skipped": self.skipped,
        }


def should_update(local: dict[str, Any], remote: dict[str, Any]) -> bool:
    """True if remote's updated_at is strictly later than local's.

    A missing or malformed timestamp on either side means the comparison
    cannot be trusted, so the answer is False.
    """
    try:
        local_updated = parse_timestamp(local.get("updated_at"))
        remote_updated = parse_timestamp(remote.get("updated_at"))
    except TimestampParseError as e:
        logger.debug("not comparing %s: %s", local.get("id") or remote.get("id"), e)
        return False
    return remote_updated > local_updated


def _valid_entry(key: str, value: dict[str, Any], kind: Optional[Kind]) -> bool:
    if kind is None:
        return True
    try:
        record = record_class(kind).from_dict(value)
    except DecodeError as e:
        logger.warning("skipping invalid remote entry %s: %s", key, e)
        return False
    if record.id != key:
        logger.warning("skipping remote entry %s filed under another id %r", key, record.id)
        return False
    return True


def merge_maps(local: dict[str, Any], remote: dict[str, Any], kind: Optional[Kind] = None) -> MergeStats:
    """
    Merge remote into local, in place.

    Args:
        local: Decoded local category blob (mutated)
        remote: Decoded remote category blob
        kind: Record kind of the category. When given, remote entries that
            would not decode as that kind are skipped like non-objects.

    Returns:
        MergeStats listing the keys added, replaced, tombstoned and skipped
    """
    stats = MergeStats()
    for key, remote_value in remote.items():
        if not isinstance(remote_value, dict):
            logger.warning("skipping malformed remote entry %s", key)
            stats.skipped.append(key)
            continue
        if not _valid_entry(key, remote_value, kind):
            stats.skipped.append(key)
            continue

        if key not in local:
            logger.info("adding %s from remote", key)
            local[key] = remote_value
            stats.added.append(key)
            continue

        local_value = local[key]
        if not isinstance(local_value, dict):
            stats.skipped.append(key)
            continue

        deleted_at = remote_value.get("deleted_at")
        if deleted_at:
            try:
                parse_timestamp(deleted_at)
            except TimestampParseError:
                logger.warning("ignoring malformed tombstone on %s: %r", key, deleted_at)
                stats.skipped.append(key)
                continue
            if local_value.get("deleted_at") != deleted_at:
                local_value["deleted_at"] = deleted_at
                stats.tombstoned.append(key)
            continue

        if should_update(local_value, remote_value):
            logger.info("replacing %s with newer remote copy", key)
            local[key] = remote_value
            stats.replaced.append(key)
    return stats


def merge_blobs(
    local: Optional[bytes],
    remote: bytes,
    kind: Optional[Kind] = None,
) -> tuple[bytes, MergeStats]:
    """
    Merge two encoded category blobs.

    Args:
        local: Local blob, or None if there is no local note
        remote: Remote blob
        kind: Record kind used to screen remote entries (see merge_maps)

    Returns:
        (merged blob, stats)

    Raises:
        DecodeError: If either blob is not a JSON object
    """
    local_map = load_blob(local) if local is not None else {}
    stats = merge_maps(local_map, load_blob(remote), kind)
    return dump_blob(local_map), stats


def merge_into_store(store: DocumentStoreProtocol, remote: bytes, *, base: Optional[str] = None) -> MergeStats:
    """
    Merge a remote blob into a store's category and persist the result.

    Uses the store's own write path, so the merged blob is written under
    the same compare-and-swap guard as any local update. Remote entries
    that are not valid records of the store's kind are skipped, and the
    merged blob must decode cleanly before anything is written.

    Args:
        store: Local category store
        remote: Remote category blob
        base: Fetched remote notes commit. When given, the merged note is
            committed on top of it so that pushing it back fast-forwards.

    Raises:
        DecodeError: If either blob is malformed
        ConflictError: If the local blob changed during the merge
    """
    tip, local = store.snapshot()
    merged, stats = merge_blobs(local, remote, store.record_class)
    if local is None or stats.changed or (base is not None and base != tip):
        decode_blob(merged, store.record_class)
        store.write_blob(merged, expected_tip=tip, base=base)
    logger.info(
        "merged %s: %d added, %d replaced, %d tombstoned, %d skipped",
        store.category, len(stats.added), len(stats.replaced),
        len(stats.tombstoned), len(stats.skipped),
    )
    return stats


# ---------------------------------------------------------------------------
# Note handles
# ---------------------------------------------------------------------------

@dataclass
class Note:
    """
    A handle on one note object.

    Handles go stale once a merge writes through them: the ref then points
    at a newer note object and the handle must be listed again.
    """
    object_id: str
    attached_object_id: str
    ref: str
    backend: BackendProtocol = field(repr=False, compare=False)
    stale: bool = False

    def read(self) -> dict[str, Any]:
        """
        Decode the note as a category mapping.

        Raises:
            StaleNoteError: If the handle was consumed by a merge
            DecodeError: If the note is not a JSON object
        """
        if self.stale:
            raise StaleNoteError(f"Note {self.object_id[:12]} on {self.ref} is stale; list notes again")
        return load_blob(self.backend.cat_file(self.object_id))

    def merge(self, other: "Note") -> MergeStats:
        """
        Merge other into this note and write the result to this note's ref.

        Both handles are stale afterwards.

        Raises:
            StaleNoteError: If either handle is stale
            DecodeError: If either note is malformed
            BackendError: If writing the merged note fails
        """
        local = self.read()
        stats = merge_maps(local, other.read())
        self.backend.add_note(self.ref, self.attached_object_id, dump_blob(local))
        self.stale = True
        other.stale = True
        return stats


def list_notes(backend: BackendProtocol, ref: str) -> list[Note]:
    """Handles for every note under ref."""
    return [
        Note(object_id=note_id, attached_object_id=commit, ref=ref, backend=backend)
        for note_id, commit in backend.list_notes(ref)
    ]


def find_note(backend: BackendProtocol, ref: str, commit: str) -> Optional[Note]:
    """Handle for the note attached to commit under ref, or None."""
    for note in list_notes(backend, ref):
        if note.attached_object_id == commit:
            return note
    return None
