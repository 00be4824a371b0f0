"""
Tally

Distributed issue tracking stored inside a git repository as git notes.
Projects, issues and comments travel with the repository through ordinary
push and fetch; divergent replicas are reconciled by a deterministic merge.

Quick Start:
    from tally import Tracker

    tr = Tracker()  # repository containing the current directory
    issue = tr.create_issue("Crash on startup")
    tr.close_record(issue)
    tr.sync("origin")

CLI Usage:
    tally issue add "Crash on startup"
    tally list
    tally sync

Storage:
    One JSON blob per category (projects, issues, comments), attached as a
    note to the repository's root commit under refs/notes/tally/<category>.

Environment Variables:
    TALLY_REPO      - Repository to operate on (CLI)
    TALLY_REMOTE    - Override the default remote
    TALLY_ANCHOR    - Pin the anchor commit
    TALLY_VERBOSE   - Set to 1 for debug logging
"""

from .api import Tracker
from .document_store import DocumentStore
from .errors import (
    AnchorError,
    BackendError,
    ConflictError,
    DecodeError,
    NotFoundError,
    StaleNoteError,
    TallyError,
    TimestampParseError,
)
from .git_backend import GitBackend
from .merge import MergeStats, merge_blobs
from .types import Comment, Issue, Project, Record

__version__ = "0.1.0"
__all__ = [
    "Tracker",
    "DocumentStore",
    "GitBackend",
    "MergeStats",
    "merge_blobs",
    "Record",
    "Project",
    "Issue",
    "Comment",
    "TallyError",
    "NotFoundError",
    "DecodeError",
    "TimestampParseError",
    "BackendError",
    "AnchorError",
    "ConflictError",
    "StaleNoteError",
]
