"""
Git backend: the version-control operations tally needs, via the git CLI.

All operations use subprocess (never shell=True) against an explicit
repository path. Failures surface as BackendError carrying the command
and git's stderr. There are no retries and no timeouts.
"""

import logging
import subprocess
from pathlib import Path
from typing import Optional

from .errors import BackendError

logger = logging.getLogger(__name__)


class GitBackend:
    """
    Wrapper for the git commands behind tally's storage core.

    Example:
        backend = GitBackend("/path/to/repo")
        backend.add_note("refs/notes/tally/issues", anchor, b"{}")
        content = backend.show_note("refs/notes/tally/issues", anchor)
    """

    def __init__(self, repo_path: Optional[str | Path] = None):
        """
        Args:
            repo_path: Path inside a git working tree. Uses cwd if not specified.
        """
        self.repo_path = Path(repo_path) if repo_path else Path.cwd()
        self._git_dir: Optional[Path] = None

    def _run(
        self,
        args: list[str],
        *,
        check: bool = True,
        input: Optional[bytes] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run a git command in the repository.

        Raises:
            BackendError: If git is missing, or the command fails and check=True
        """
        cmd = ["git", "-C", str(self.repo_path), *args]
        logger.debug("running: %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, input=input, capture_output=True)
        except OSError as e:
            raise BackendError(f"Could not run git: {e}", command=cmd) from e
        if check and result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise BackendError(
                f"git {args[0]} failed: {stderr}",
                command=cmd,
                stderr=stderr,
            )
        return result

    def _lines(self, args: list[str], *, check: bool = True) -> list[str]:
        result = self._run(args, check=check)
        if result.returncode != 0:
            return []
        return [line for line in result.stdout.decode("utf-8").splitlines() if line.strip()]

    @property
    def git_dir(self) -> Path:
        """Absolute path of the repository's git directory."""
        if self._git_dir is None:
            out = self._run(["rev-parse", "--absolute-git-dir"]).stdout.decode("utf-8").strip()
            self._git_dir = Path(out)
        return self._git_dir

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def resolve_ref(self, ref: str) -> Optional[str]:
        """Object id that ref points to, or None if it does not exist."""
        # A bare hex id passes --verify even when no such object exists
        if "^{" not in ref:
            ref = f"{ref}^{{object}}"
        result = self._run(["rev-parse", "--verify", "--quiet", ref], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.decode("utf-8").strip()

    def root_commits(self, rev: str = "HEAD") -> list[str]:
        """Commits without parents that are reachable from rev."""
        return self._lines(["rev-list", "--max-parents=0", rev])

    def log_grep(self, patterns: list[str]) -> list[tuple[str, str]]:
        """
        Commits on HEAD whose message matches any pattern (case-insensitive).

        Returns:
            List of (commit id, full message) tuples
        """
        if not patterns:
            return []
        args = ["log", "-i", "--fixed-strings", "--format=%H%x00%B%x1e"]
        for pattern in patterns:
            args.extend(["--grep", pattern])
        out = self._run(args).stdout.decode("utf-8", errors="replace")
        commits = []
        for entry in out.split("\x1e"):
            entry = entry.strip("\n")
            if not entry:
                continue
            sha, _, message = entry.partition("\x00")
            commits.append((sha, message))
        return commits

    # -------------------------------------------------------------------------
    # Notes
    # -------------------------------------------------------------------------

    def show_note(self, ref: str, commit: str) -> Optional[bytes]:
        """Note attached to commit under ref, or None if there is none."""
        note_id = self.note_object(ref, commit)
        if note_id is None:
            return None
        return self.cat_file(note_id)

    def note_object(self, ref: str, commit: str) -> Optional[str]:
        """Object id of the note attached to commit under ref, or None."""
        result = self._run(["notes", "--ref", ref, "list", commit], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.decode("utf-8").strip() or None

    def add_note(self, ref: str, commit: str, content: bytes) -> None:
        """Attach content to commit under ref, replacing any existing note."""
        self._run(["notes", "--ref", ref, "add", "-f", "-F", "-", commit], input=content)

    def list_notes(self, ref: str) -> list[tuple[str, str]]:
        """
        All notes under ref.

        Returns:
            List of (note object id, annotated commit id) tuples
        """
        if self.resolve_ref(ref) is None:
            return []
        notes = []
        for line in self._lines(["notes", "--ref", ref, "list"]):
            parts = line.split()
            if len(parts) >= 2:
                notes.append((parts[0], parts[1]))
        return notes

    def cat_file(self, object_id: str) -> bytes:
        """Raw content of a blob."""
        return self._run(["cat-file", "blob", object_id]).stdout

    # -------------------------------------------------------------------------
    # Refs
    # -------------------------------------------------------------------------

    def update_ref(self, ref: str, new: str, old: Optional[str] = None) -> None:
        """
        Point ref at new.

        When old is given the update is a compare-and-swap: it only happens
        if ref currently points at old. Pass old="" to require that ref does
        not exist yet.
        """
        args = ["update-ref", ref, new]
        if old is not None:
            args.append(old)
        self._run(args)

    def delete_ref(self, ref: str) -> None:
        self._run(["update-ref", "-d", ref])

    def for_each_ref(self, pattern: str) -> list[str]:
        """Names of local refs matching pattern."""
        return self._lines(["for-each-ref", "--format=%(refname)", pattern])

    # -------------------------------------------------------------------------
    # Identity and transport
    # -------------------------------------------------------------------------

    def user_email(self) -> str:
        """Configured user.email, or empty string when unset."""
        result = self._run(["config", "user.email"], check=False)
        return result.stdout.decode("utf-8").strip()

    def push(self, remote: str, refspec: str) -> None:
        self._run(["push", remote, refspec])

    def fetch(self, remote: str, refspec: str) -> None:
        self._run(["fetch", remote, refspec])

    def ls_remote(self, remote: str, pattern: str) -> list[str]:
        """Names of refs on remote matching pattern."""
        refs = []
        for line in self._lines(["ls-remote", "--refs", remote, pattern]):
            parts = line.split("\t")
            if len(parts) >= 2:
                refs.append(parts[1])
        return refs
