"""
Shared pytest fixtures for tally tests.

Provides throwaway git repositories (a working repo, an empty one, and a
bare remote with two clones) plus an in-memory backend for tests that only
need note storage, not real git.
"""

import shutil
import subprocess
from pathlib import Path
from typing import Optional

import pytest

from tally.config import TrackerConfig
from tally.errors import BackendError


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(path: Path, *args: str, input: Optional[bytes] = None) -> str:
    """Run git in path and return stdout."""
    result = subprocess.run(
        ["git", "-C", str(path), *args],
        input=input, capture_output=True, check=True,
    )
    return result.stdout.decode("utf-8").strip()


def configure_identity(path: Path, email: str = "alice@example.com") -> None:
    git(path, "config", "user.email", email)
    git(path, "config", "user.name", email.split("@")[0])
    git(path, "config", "commit.gpgsign", "false")


def commit(path: Path, message: str, filename: str = "README") -> str:
    """Write a file, commit it, return the commit id."""
    target = path / filename
    target.write_text(target.read_text() + message + "\n" if target.exists() else message + "\n")
    git(path, "add", filename)
    git(path, "commit", "-q", "-m", message)
    return git(path, "rev-parse", "HEAD")


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep the caller's git identity and tally settings out of tests."""
    for name in ("GIT_AUTHOR_EMAIL", "TALLY_REMOTE", "TALLY_ANCHOR", "TALLY_REPO", "TALLY_VERBOSE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TALLY_ERROR_LOG", str(tmp_path / "tally-errors.log"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    (tmp_path / "home").mkdir(exist_ok=True)


@pytest.fixture
def empty_repo(tmp_path) -> Path:
    """A git repository with no commits."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    path = tmp_path / "empty"
    path.mkdir()
    git(path, "init", "-q")
    configure_identity(path)
    return path


@pytest.fixture
def repo(empty_repo) -> Path:
    """A git repository with a single root commit."""
    commit(empty_repo, "initial")
    return empty_repo


@pytest.fixture
def remote_pair(tmp_path):
    """
    A bare remote and two clones of it, sharing one root commit.

    Returns:
        (bare remote path, first clone, second clone)
    """
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    seed = tmp_path / "seed"
    seed.mkdir()
    git(seed, "init", "-q")
    configure_identity(seed)
    commit(seed, "initial")

    bare = tmp_path / "remote.git"
    subprocess.run(["git", "clone", "-q", "--bare", str(seed), str(bare)],
                   capture_output=True, check=True)

    clones = []
    for name, email in (("alice", "alice@example.com"), ("bob", "bob@example.com")):
        path = tmp_path / name
        subprocess.run(["git", "clone", "-q", str(bare), str(path)],
                       capture_output=True, check=True)
        configure_identity(path, email)
        clones.append(path)
    return bare, clones[0], clones[1]


@pytest.fixture
def tracker(repo):
    from tally.api import Tracker
    tr = Tracker(repo)
    yield tr
    tr.close()


# -----------------------------------------------------------------------------
# In-memory backend
# -----------------------------------------------------------------------------

class MemoryBackend:
    """
    Minimal in-memory stand-in for GitBackend.

    Notes refs are modelled as a chain of snapshots so compare-and-swap,
    staging refs and bases behave like git's. No transport.
    """

    ANCHOR = "a" * 40

    def __init__(self, email: str = "mem@example.com"):
        self.repo_path = Path("/nonexistent")
        self.email = email
        self.commits: dict[str, dict[str, bytes]] = {}
        self.refs: dict[str, str] = {}
        self.blobs: dict[str, bytes] = {}
        self.messages: list[tuple[str, str]] = []
        self._counter = 0

    def _new_id(self) -> str:
        self._counter += 1
        return f"{self._counter:040x}"

    def resolve_ref(self, ref):
        if ref in ("HEAD", f"{self.ANCHOR}^{{commit}}"):
            return self.ANCHOR
        return self.refs.get(ref)

    def root_commits(self, rev="HEAD"):
        return [self.ANCHOR]

    def log_grep(self, patterns):
        lowered = [p.lower() for p in patterns]
        return [(sha, msg) for sha, msg in self.messages
                if any(p in msg.lower() for p in lowered)]

    def show_note(self, ref, commit):
        tip = self.refs.get(ref)
        if tip is None:
            return None
        note_id = self.commits[tip].get(commit)
        return self.blobs[note_id] if note_id else None

    def add_note(self, ref, commit, content):
        notes = dict(self.commits.get(self.refs.get(ref), {}))
        blob_id = self._new_id()
        self.blobs[blob_id] = content
        notes[commit] = blob_id
        tip = self._new_id()
        self.commits[tip] = notes
        self.refs[ref] = tip

    def list_notes(self, ref):
        tip = self.refs.get(ref)
        if tip is None:
            return []
        return [(note_id, commit) for commit, note_id in self.commits[tip].items()]

    def cat_file(self, object_id):
        return self.blobs[object_id]

    def update_ref(self, ref, new, old=None):
        if old is not None and self.refs.get(ref, "") != old:
            raise BackendError(f"cannot lock ref {ref}")
        self.refs[ref] = new

    def delete_ref(self, ref):
        self.refs.pop(ref, None)

    def for_each_ref(self, pattern):
        return sorted(r for r in self.refs if r.startswith(pattern.rstrip("/") + "/"))

    def user_email(self):
        return self.email

    def push(self, remote, refspec):
        raise BackendError("MemoryBackend has no remotes")

    def fetch(self, remote, refspec):
        raise BackendError("MemoryBackend has no remotes")

    def ls_remote(self, remote, pattern):
        return []


@pytest.fixture
def memory_backend():
    return MemoryBackend()


@pytest.fixture
def memory_tracker(memory_backend, tmp_path):
    from tally.api import Tracker
    tr = Tracker(config=TrackerConfig(repo_path=tmp_path), backend=memory_backend)
    yield tr
    tr.close()
