"""
Core API for tally.

The Tracker is constructed once at the program boundary with an explicit
repository and wires together:
- one DocumentStore per category (projects, issues, comments)
- the RefSynchronizer for push/pull
- the merge engine for reconciling fetched replicas

Everything is synchronous. Each call is a short sequence of blocking git
commands; callers needing responsiveness should run them off their UI loop.
"""

import logging
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from .backend import create_backend
from .config import TrackerConfig, load_config
from .document_store import DocumentStore
from .errors import BackendError, NotFoundError
from .merge import MergeStats, merge_into_store
from .protocol import BackendProtocol
from .shortcode import generate_shortcode, is_shortcode
from .sync import REMOTE_TRACKING_NAMESPACE, RefSynchronizer
from .types import (
    RECORD_KINDS,
    Comment,
    Issue,
    Kind,
    Project,
    Record,
    record_class,
    utc_now,
)

logger = logging.getLogger(__name__)

# "closes #ABC123" in a commit message closes that issue
CLOSES_PATTERN = re.compile(r"\bcloses\s+#([A-Za-z0-9]{6})\b", re.IGNORECASE)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def sort_for_display(records: list[Record]) -> list[Record]:
    """Open records first, then closed; each group newest update first."""
    def updated(r: Record) -> datetime:
        return r.updated_at or _EPOCH

    open_ = [r for r in records if getattr(r, "closed", "false") != "true"]
    closed = [r for r in records if getattr(r, "closed", "false") == "true"]
    return (sorted(open_, key=updated, reverse=True)
            + sorted(closed, key=updated, reverse=True))


class Tracker:
    """
    Projects, issues and comments stored in git notes.

    Example:
        tr = Tracker("/path/to/repo")
        issue = tr.create_issue("Crash on startup")
        tr.close(issue)
        tr.sync("origin")
    """

    def __init__(
        self,
        repo_path: Optional[str | Path] = None,
        *,
        config: Optional[TrackerConfig] = None,
        backend: Optional[BackendProtocol] = None,
    ) -> None:
        """
        Args:
            repo_path: Path inside the repository. Uses cwd if not specified.
            config: Pre-loaded TrackerConfig (skips config file discovery).
            backend: Injected backend (skips factory creation).
        """
        self._config = config if config is not None else load_config(
            Path(repo_path) if repo_path is not None else None
        )
        self._backend = backend if backend is not None else create_backend(self._config)

        self._stores: dict[str, DocumentStore] = {
            category: DocumentStore(
                self._backend,
                category,
                pinned_anchor=self._config.anchor,
                compare_and_swap=self._config.compare_and_swap,
            )
            for category in RECORD_KINDS
        }
        self._synchronizer = RefSynchronizer(self._backend)

        # Codes issued by this process; seeded from stored records on first use
        self._shortcodes: set[str] = set()
        self._shortcodes_loaded = False

        self._ops_log_handler = None
        git_dir = getattr(self._backend, "git_dir", None)
        if git_dir is not None:
            from .logging_config import configure_ops_log
            self._ops_log_handler = configure_ops_log(git_dir)

    @property
    def config(self) -> TrackerConfig:
        return self._config

    @property
    def backend(self) -> BackendProtocol:
        return self._backend

    def store(self, kind: Kind) -> DocumentStore:
        """The DocumentStore for a category name, refpath or record class."""
        return self._stores[record_class(kind).category]

    def close(self) -> None:
        """Detach the operations log."""
        if self._ops_log_handler is not None:
            logging.getLogger("tally").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    def author(self) -> str:
        """
        Identity stamped on new records.

        Priority: GIT_AUTHOR_EMAIL, config `author`, git `user.email`.

        Raises:
            BackendError: If no identity is configured anywhere
        """
        author = (
            os.environ.get("GIT_AUTHOR_EMAIL")
            or self._config.author
            or self._backend.user_email()
        ).strip()
        if not author:
            raise BackendError(
                "No author identity: set GIT_AUTHOR_EMAIL or `git config user.email`"
            )
        return author

    def _next_shortcode(self, record_id: str) -> str:
        if not self._shortcodes_loaded:
            for category in ("projects", "issues"):
                for record in self._stores[category].list():
                    if record.shortcode:
                        self._shortcodes.add(record.shortcode)
            self._shortcodes_loaded = True
        return generate_shortcode(record_id, self._shortcodes)

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def _create(self, record: Record) -> Record:
        if record.is_persisted:
            raise ValueError(f"{type(record).__name__} {record.id} has already been persisted")
        record.id = str(uuid.uuid4())
        record.author = self.author()
        if hasattr(record, "shortcode"):
            record.shortcode = self._next_shortcode(record.id)
        record.touch()
        self.store(type(record)).add(record)
        logger.info("created %s %s", record.category, record.id)
        return record

    def create_project(self, title: str, description: str = "") -> Project:
        """Create and store a new project."""
        return self._create(Project(title=title, description=description))

    def create_issue(
        self,
        title: str,
        description: str = "",
        *,
        project: Optional[Project] = None,
    ) -> Issue:
        """Create and store a new issue, optionally filed under a project."""
        issue = Issue(title=title, description=description)
        if project is not None:
            issue.parent_type = "project"
            issue.parent_id = project.id
        return self._create(issue)

    def create_comment(self, parent: Union[Project, Issue], content: str) -> Comment:
        """Create and store a comment on a project or issue."""
        comment = Comment(
            content=content,
            parent_type="project" if isinstance(parent, Project) else "issue",
            parent_id=parent.id,
        )
        return self._create(comment)

    def save(self, record: Record) -> Record:
        """Stamp updated_at and write the record back to its category."""
        record.touch()
        self.store(type(record)).update(record)
        return record

    def close_record(self, record: Union[Project, Issue]) -> Union[Project, Issue]:
        """Mark a project or issue closed."""
        record.closed = "true"
        return self.save(record)

    def reopen(self, record: Union[Project, Issue]) -> Union[Project, Issue]:
        """Mark a project or issue open again."""
        record.closed = "false"
        return self.save(record)

    def delete(self, record: Record) -> Record:
        """
        Soft-delete: set the deleted_at tombstone.

        The record stays in its blob so the deletion reaches other clones
        through merges. Listings hide it. restore() brings it back locally,
        but merging any replica that still holds the tombstone deletes the
        record again.
        """
        record.deleted_at = utc_now()
        return self.save(record)

    def restore(self, record: Record) -> Record:
        """Clear the deleted_at tombstone."""
        record.deleted_at = None
        return self.save(record)

    def purge(self, record: Record) -> None:
        """
        Hard-delete: drop the record's entry from its blob.

        A purge does not propagate; another clone that still has the
        record will bring it back on the next merge.

        Raises:
            NotFoundError: If the category has no note yet
        """
        self.store(type(record)).remove(record)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, kind: Kind, record_id: str) -> Optional[Record]:
        """Get a record by full id."""
        return self.store(kind).get(record_id)

    def find_by_shortcode(
        self,
        code: str,
        kind: Optional[Kind] = None,
        *,
        include_deleted: bool = False,
    ) -> Optional[Record]:
        """
        Find a project or issue by shortcode ('#' prefix and case ignored).

        Soft-deleted records are skipped unless include_deleted is set.
        """
        code = code.lstrip("#").upper()
        categories = [record_class(kind).category] if kind else ["issues", "projects"]
        for category in categories:
            for record in self._stores[category].list():
                if record.is_deleted and not include_deleted:
                    continue
                if getattr(record, "shortcode", "") == code:
                    return record
        return None

    def resolve(self, kind: Kind, ref: str, *, include_deleted: bool = False) -> Record:
        """
        Look up a record by full id, shortcode, or unique id prefix.

        Soft-deleted records do not match unless include_deleted is set.

        Raises:
            NotFoundError: If nothing (or more than one record) matches
        """
        records = self.store(kind).load()
        if not include_deleted:
            records = {rid: r for rid, r in records.items() if not r.is_deleted}
        if ref in records:
            return records[ref]
        if is_shortcode(ref):
            found = self.find_by_shortcode(ref, kind, include_deleted=include_deleted)
            if found is not None:
                return found
        matches = [r for rid, r in records.items() if rid.startswith(ref)]
        if len(matches) == 1:
            return matches[0]
        if matches:
            raise NotFoundError(f"{ref!r} matches {len(matches)} {record_class(kind).category}")
        raise NotFoundError(f"No {record_class(kind).category} matching {ref!r}")

    def list_projects(self, *, include_deleted: bool = False) -> list[Project]:
        """Projects, open first, most recently updated first."""
        projects = self._stores["projects"].list()
        if not include_deleted:
            projects = [p for p in projects if not p.is_deleted]
        return sort_for_display(projects)

    def list_issues(
        self,
        *,
        project_id: Optional[str] = None,
        include_closed: bool = True,
        include_deleted: bool = False,
    ) -> list[Issue]:
        """
        Issues for display: open before closed, newest update first.

        Args:
            project_id: Only issues filed under this project
            include_closed: Include closed issues
            include_deleted: Include soft-deleted issues
        """
        store = self._stores["issues"]
        issues = store.list_by_parent(project_id) if project_id else store.list()
        if not include_deleted:
            issues = [i for i in issues if not i.is_deleted]
        if not include_closed:
            issues = [i for i in issues if not i.is_closed]
        return sort_for_display(issues)

    def list_comments(self, parent_id: str, *, include_deleted: bool = False) -> list[Comment]:
        """Comments on a project or issue, oldest first."""
        comments = self._stores["comments"].list_by_parent(parent_id)
        if not include_deleted:
            comments = [c for c in comments if not c.is_deleted]
        return sorted(comments, key=lambda c: c.created_at or _EPOCH)

    # -------------------------------------------------------------------------
    # Commit integration
    # -------------------------------------------------------------------------

    def close_issues_from_commits(self) -> list[Issue]:
        """
        Close open issues referenced as `closes #CODE` in commit messages on HEAD.

        Returns:
            The issues that were closed by this call
        """
        candidates = {
            issue.shortcode: issue
            for issue in self.list_issues(include_closed=False)
            if issue.shortcode
        }
        if not candidates:
            return []
        commits = self._backend.log_grep([f"closes #{code}" for code in candidates])
        closed = []
        for sha, message in commits:
            for match in CLOSES_PATTERN.finditer(message):
                issue = candidates.pop(match.group(1).upper(), None)
                if issue is not None:
                    logger.info("closing %s (#%s) from commit %s", issue.id, issue.shortcode, sha[:12])
                    self.close_record(issue)
                    closed.append(issue)
        return closed

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def push(self, remote: Optional[str] = None) -> None:
        """Push the notes namespace to remote (default: configured remote)."""
        self._synchronizer.push(remote or self._config.remote)

    def pull(self, remote: Optional[str] = None) -> None:
        """Fetch remote's issues ref into the local one. Does not merge."""
        self._synchronizer.pull(remote or self._config.remote)

    def merge(self, kind: Kind, remote_ref: str) -> MergeStats:
        """
        Merge the note at the anchor under remote_ref into a local category.

        Args:
            kind: Category to merge into
            remote_ref: Any notes ref holding a replica of that category,
                e.g. a remote-tracking ref left by a fetch

        Raises:
            NotFoundError: If remote_ref has no note at the anchor
            DecodeError: If either blob is malformed
        """
        store = self.store(kind)
        remote_blob = self._backend.show_note(remote_ref, store.anchor())
        if remote_blob is None:
            raise NotFoundError(f"No note at anchor under {remote_ref}")
        return merge_into_store(store, remote_blob)

    def sync(self, remote: Optional[str] = None, *, push: bool = True) -> dict[str, MergeStats]:
        """
        Fetch every category from remote, merge it locally, then push.

        Each merged note is committed on top of the fetched remote notes
        commit, so the push fast-forwards the remote refs. If someone else
        pushes in between, the push is rejected and sync can simply be run
        again.

        Returns:
            MergeStats per category that the remote had
        """
        remote = remote or self._config.remote
        results: dict[str, MergeStats] = {}
        for category, store in self._stores.items():
            tracking = self._synchronizer.fetch_category(remote, category)
            if tracking is None:
                continue
            remote_blob = self._backend.show_note(tracking, store.anchor())
            if remote_blob is None:
                logger.warning("%s %s has no note at our anchor; skipping", remote, category)
                continue
            results[category] = merge_into_store(
                store, remote_blob, base=self._backend.resolve_ref(tracking),
            )
        if push:
            self._synchronizer.push(remote)
        return results

    def delete_refs(self, remote: Optional[str] = None, *, local: bool = True) -> list[str]:
        """
        Delete tally's notes refs, locally and/or on a remote.

        Locally this drops every category ref and the remote-tracking copies
        left by sync. Nothing is tombstoned: a clone that still has the
        records brings them back on its next sync.

        Args:
            remote: Also delete the category refs on this remote
            local: Delete the local refs (default True)

        Returns:
            Names of the deleted refs; remote ones as "<remote>:<ref>"

        Raises:
            BackendError: If a ref cannot be deleted
        """
        deleted = []
        if remote:
            deleted += [f"{remote}:{ref}" for ref in self._synchronizer.delete_remote_refs(remote)]
        if local:
            deleted += self._synchronizer.delete_local_refs()
            deleted += self._synchronizer.delete_local_refs(REMOTE_TRACKING_NAMESPACE)
        return deleted
