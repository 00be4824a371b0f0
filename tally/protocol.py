"""
Protocol definitions for tally's collaborators.

Defines interface contracts at two levels:
- BackendProtocol: the version-control backend the core is written against
  (git via subprocess locally; alternatives register via entry points)
- DocumentStoreProtocol: category-blob storage as consumed by the Tracker
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from .types import Record


@runtime_checkable
class BackendProtocol(Protocol):
    """
    Version-control operations needed by the storage core.

    Implemented by:
    - GitBackend (git CLI via subprocess)
    """

    repo_path: Path

    # -- History --

    def resolve_ref(self, ref: str) -> Optional[str]: ...

    def root_commits(self, rev: str = "HEAD") -> list[str]: ...

    def log_grep(self, patterns: list[str]) -> list[tuple[str, str]]: ...

    # -- Notes --

    def show_note(self, ref: str, commit: str) -> Optional[bytes]: ...

    def add_note(self, ref: str, commit: str, content: bytes) -> None: ...

    def list_notes(self, ref: str) -> list[tuple[str, str]]: ...

    def cat_file(self, object_id: str) -> bytes: ...

    # -- Refs --

    def update_ref(self, ref: str, new: str, old: Optional[str] = None) -> None: ...

    def delete_ref(self, ref: str) -> None: ...

    def for_each_ref(self, pattern: str) -> list[str]: ...

    # -- Identity and transport --

    def user_email(self) -> str: ...

    def push(self, remote: str, refspec: str) -> None: ...

    def fetch(self, remote: str, refspec: str) -> None: ...

    def ls_remote(self, remote: str, pattern: str) -> list[str]: ...


@runtime_checkable
class DocumentStoreProtocol(Protocol):
    """Whole-blob record storage for one category."""

    category: str
    record_class: type[Record]
    refpath: str

    def add(self, record: Record) -> None: ...

    def update(self, record: Record) -> None: ...

    def remove(self, record: Record) -> None: ...

    def get(self, record_id: str) -> Optional[Record]: ...

    def list(self) -> list[Record]: ...

    def list_by_parent(self, parent_id: str) -> list[Record]: ...

    def load(self) -> dict[str, Record]: ...

    def snapshot(self) -> tuple[Optional[str], Optional[bytes]]: ...

    def read_blob(self) -> Optional[bytes]: ...

    def write_blob(
        self,
        content: bytes,
        *,
        expected_tip: Optional[str] = ...,
        base: Optional[str] = None,
    ) -> None: ...
