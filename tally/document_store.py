"""
Document store on git notes.

Each record kind has one category blob: a JSON object mapping record id to
record, stored as the note attached to the anchor commit under the
category's notes ref. The blob is the unit of storage. Every write reads
the whole mapping, changes one entry, and writes the whole mapping back.

Writes are compare-and-swap by default: the new note is built on a
private staging ref starting from the notes ref tip observed at read time,
then the category ref is moved with `git update-ref <ref> <new> <old>`.
If another process wrote in between, the move fails and ConflictError is
raised; nothing is written. With compare-and-swap disabled the store
overwrites the note blindly and the last writer wins.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from .anchor import resolve_anchor
from .errors import BackendError, ConflictError, NotFoundError
from .protocol import BackendProtocol
from .types import (
    CATEGORY_PATHS,
    Kind,
    Record,
    decode_blob,
    encode_blob,
    record_class,
)

logger = logging.getLogger(__name__)

# Scratch refs for compare-and-swap writes; outside the pushed namespace
STAGING_NAMESPACE = "refs/notes/tally-staging"

# Sentinel: "use the tip observed by this write's own read"
_OWN_READ = object()


class DocumentStore:
    """
    Whole-blob store for one record category.

    Example:
        store = DocumentStore(GitBackend("/repo"), "issues")
        store.add(issue)
        open_issues = [i for i in store.list() if not i.is_closed]
    """

    def __init__(
        self,
        backend: BackendProtocol,
        kind: Kind,
        *,
        pinned_anchor: Optional[str] = None,
        compare_and_swap: bool = True,
    ):
        """
        Args:
            backend: Version-control backend for the repository
            kind: Category name ("issues"), refpath, or record class
            pinned_anchor: Anchor commit from configuration, if pinned
            compare_and_swap: Refuse to write over a concurrent change
        """
        self._backend = backend
        self.record_class = record_class(kind)
        self.category = self.record_class.category
        self.refpath = CATEGORY_PATHS[self.category]
        self._pinned_anchor = pinned_anchor
        self._compare_and_swap = compare_and_swap

    def anchor(self) -> str:
        """Resolve the commit this category's note is attached to."""
        return resolve_anchor(self._backend, pinned=self._pinned_anchor)

    # -------------------------------------------------------------------------
    # Blob I/O
    # -------------------------------------------------------------------------

    def _read(self, anchor: str) -> tuple[Optional[str], Optional[bytes]]:
        """Observed notes ref tip and raw note content (None if no note)."""
        # Tip first: a write landing between the two reads makes the later
        # compare-and-swap fail rather than silently pass.
        tip = self._backend.resolve_ref(self.refpath)
        content = self._backend.show_note(self.refpath, anchor)
        return tip, content

    def snapshot(self) -> tuple[Optional[str], Optional[bytes]]:
        """
        Read the notes ref tip together with the blob it holds.

        Pass the tip back to write_blob(expected_tip=...) to make a
        read-modify-write cycle compare-and-swap.
        """
        return self._read(self.anchor())

    def read_blob(self) -> Optional[bytes]:
        """Raw category blob at the anchor, or None if no note exists yet."""
        return self._read(self.anchor())[1]

    def load(self) -> dict[str, Record]:
        """
        Decode the category blob into an id -> Record mapping.

        A missing note is an empty category.

        Raises:
            DecodeError: If the blob is malformed
        """
        content = self.read_blob()
        if content is None:
            return {}
        return decode_blob(content, self.record_class)

    def write_blob(self, content: bytes, *, expected_tip=_OWN_READ, base: Optional[str] = None) -> None:
        """
        Replace the category blob at the anchor.

        Args:
            content: Complete encoded blob
            expected_tip: Notes ref tip the caller based content on (None if
                the ref did not exist). Defaults to the tip read now, which
                only guards against writers racing this call itself.
            base: Notes commit to build the new note on instead of
                expected_tip. Building on a fetched remote tip makes the
                result a fast-forward of the remote ref.

        Raises:
            ConflictError: If compare-and-swap is on and the ref moved
            BackendError: If git fails
        """
        anchor = self.anchor()
        if expected_tip is _OWN_READ:
            expected_tip = self._backend.resolve_ref(self.refpath)
        self._write(anchor, content, expected_tip, base=base)

    def _write(
        self,
        anchor: str,
        content: bytes,
        expected_tip: Optional[str],
        *,
        base: Optional[str] = None,
    ) -> None:
        if not self._compare_and_swap and base is None:
            self._backend.add_note(self.refpath, anchor, content)
            logger.info("wrote %s at %s (%d bytes)", self.refpath, anchor[:12], len(content))
            return

        staging = f"{STAGING_NAMESPACE}/{self.category}-{uuid.uuid4().hex}"
        try:
            start = base or expected_tip
            if start is not None:
                self._backend.update_ref(staging, start)
            self._backend.add_note(staging, anchor, content)
            new_tip = self._backend.resolve_ref(staging)
            if new_tip is None:
                raise BackendError(f"Staged note on {staging} vanished before commit")
            old = (expected_tip or "") if self._compare_and_swap else None
            try:
                self._backend.update_ref(self.refpath, new_tip, old)
            except BackendError as e:
                raise ConflictError(
                    f"{self.refpath} changed since it was read; re-read and retry"
                ) from e
        finally:
            if self._backend.resolve_ref(staging) is not None:
                self._backend.delete_ref(staging)
        logger.info("wrote %s at %s (%d bytes)", self.refpath, anchor[:12], len(content))

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def _check_kind(self, record: Record) -> None:
        if not isinstance(record, self.record_class):
            raise TypeError(
                f"{type(record).__name__} cannot be stored in {self.category}"
            )
        if not record.is_persisted:
            raise ValueError("Record has no id")

    def add(self, record: Record) -> None:
        """
        Insert or replace a record in its category blob.

        An absent note is treated as an empty category.

        Raises:
            DecodeError: If the existing blob is malformed
            ConflictError: If another writer changed the blob meanwhile
            BackendError: If git fails
        """
        self._check_kind(record)
        anchor = self.anchor()
        tip, content = self._read(anchor)
        records = decode_blob(content, self.record_class) if content is not None else {}
        records[record.id] = record
        self._write(anchor, encode_blob(records), tip)
        logger.debug("upserted %s %s", self.category, record.id)

    def update(self, record: Record) -> None:
        """Same as add(): the id decides whether this inserts or replaces."""
        self.add(record)

    def remove(self, record: Record) -> None:
        """
        Purge a record's entry from its category blob.

        Removing an id that is not in the blob rewrites it unchanged.

        Raises:
            NotFoundError: If the category has no note at the anchor
            DecodeError: If the existing blob is malformed
            ConflictError: If another writer changed the blob meanwhile
        """
        self._check_kind(record)
        anchor = self.anchor()
        tip, content = self._read(anchor)
        if content is None:
            raise NotFoundError(f"No {self.category} note at anchor {anchor[:12]}")
        records = decode_blob(content, self.record_class)
        records.pop(record.id, None)
        self._write(anchor, encode_blob(records), tip)
        logger.debug("removed %s %s", self.category, record.id)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, record_id: str) -> Optional[Record]:
        """Get a record by id, or None."""
        return self.load().get(record_id)

    def list(self) -> list[Record]:
        """All records in the category, in blob order (no sort guarantee)."""
        return list(self.load().values())

    def list_by_parent(self, parent_id: str) -> list[Record]:
        """
        Records whose parent_id equals parent_id.

        Raises:
            ValueError: For categories whose records have no parent
        """
        if "parent_id" not in self.record_class.__dataclass_fields__:
            raise ValueError(f"{self.category} records have no parent")
        return [r for r in self.load().values() if getattr(r, "parent_id") == parent_id]
