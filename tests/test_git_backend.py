"""
Tests for the git CLI backend.
"""

import pytest

from tally.errors import BackendError
from tally.git_backend import GitBackend
from tally.protocol import BackendProtocol

from conftest import commit, git, requires_git


pytestmark = requires_git


@pytest.fixture
def backend(repo):
    return GitBackend(repo)


def test_satisfies_protocol(backend):
    assert isinstance(backend, BackendProtocol)


def test_resolve_ref(backend, repo):
    assert backend.resolve_ref("HEAD") == git(repo, "rev-parse", "HEAD")
    assert backend.resolve_ref("refs/notes/missing") is None


def test_git_dir(backend, repo):
    assert backend.git_dir.resolve() == (repo / ".git").resolve()


def test_notes_round_trip(backend, repo):
    head = git(repo, "rev-parse", "HEAD")
    assert backend.show_note("refs/notes/test", head) is None
    backend.add_note("refs/notes/test", head, b'{"a":1}')
    assert backend.show_note("refs/notes/test", head).strip() == b'{"a":1}'

    backend.add_note("refs/notes/test", head, b'{"a":2}')
    notes = backend.list_notes("refs/notes/test")
    assert len(notes) == 1
    note_id, attached = notes[0]
    assert attached == head
    assert backend.cat_file(note_id).strip() == b'{"a":2}'


def test_list_notes_missing_ref(backend):
    assert backend.list_notes("refs/notes/missing") == []


def test_update_ref_compare_and_swap(backend, repo):
    first = git(repo, "rev-parse", "HEAD")
    second = commit(repo, "second")
    backend.update_ref("refs/test/x", first, "")
    with pytest.raises(BackendError):
        backend.update_ref("refs/test/x", second, "")
    with pytest.raises(BackendError):
        backend.update_ref("refs/test/x", second, second)
    backend.update_ref("refs/test/x", second, first)
    assert backend.resolve_ref("refs/test/x") == second
    assert backend.for_each_ref("refs/test") == ["refs/test/x"]
    backend.delete_ref("refs/test/x")
    assert backend.resolve_ref("refs/test/x") is None


def test_log_grep(backend, repo):
    commit(repo, "Unrelated change")
    sha = commit(repo, "Fix it\n\nCLOSES #ABC123")
    matches = backend.log_grep(["closes #abc123"])
    assert [m[0] for m in matches] == [sha]
    assert "CLOSES #ABC123" in matches[0][1]
    assert backend.log_grep([]) == []


def test_root_commits(backend, repo):
    root = git(repo, "rev-parse", "HEAD")
    commit(repo, "second")
    assert backend.root_commits() == [root]


def test_user_email(backend, repo):
    assert backend.user_email() == "alice@example.com"
    git(repo, "config", "--unset", "user.email")
    assert backend.user_email() == ""


def test_failure_carries_stderr(backend):
    with pytest.raises(BackendError) as excinfo:
        backend.cat_file("0" * 40)
    assert excinfo.value.command[:2] == ["git", "-C"]
    assert excinfo.value.stderr
