"""
Tests for the category-blob document store.

Runs against real git where the behavior depends on git itself (notes,
update-ref compare-and-swap), and against the in-memory backend otherwise.
"""

import pytest

from tally.document_store import STAGING_NAMESPACE, DocumentStore
from tally.errors import AnchorError, ConflictError, DecodeError, NotFoundError
from tally.git_backend import GitBackend
from tally.protocol import DocumentStoreProtocol
from tally.types import ISSUES_PATH, Comment, Issue, Project, load_blob

from conftest import commit, git, requires_git


def make_issue(record_id="i1", **fields) -> Issue:
    issue = Issue(id=record_id, author="alice@example.com", **fields)
    issue.touch()
    return issue


@requires_git
class TestGitDocumentStore:

    def test_add_to_empty_category(self, repo):
        store = DocumentStore(GitBackend(repo), "issues")
        issue = make_issue(title="Crash")
        store.add(issue)

        assert store.get("i1") == issue
        root = git(repo, "rev-list", "--max-parents=0", "HEAD")
        note = git(repo, "notes", "--ref", ISSUES_PATH, "show", root)
        assert set(load_blob(note)) == {"i1"}

    def test_add_twice_is_idempotent(self, repo):
        store = DocumentStore(GitBackend(repo), "issues")
        issue = make_issue()
        store.add(issue)
        first = store.read_blob()
        store.add(issue)
        assert store.read_blob() == first
        assert len(store.list()) == 1

    def test_update_replaces_whole_record(self, repo):
        store = DocumentStore(GitBackend(repo), Issue)
        issue = make_issue(title="Crash", description="on startup")
        store.add(issue)

        issue.title = "Crash on startup"
        issue.closed = "true"
        store.update(issue)

        stored = store.get("i1")
        assert stored.title == "Crash on startup"
        assert stored.is_closed
        assert len(store.list()) == 1

    def test_note_stays_on_root_after_new_commits(self, repo):
        store = DocumentStore(GitBackend(repo), "issues")
        store.add(make_issue())
        commit(repo, "second")
        commit(repo, "third")
        assert store.get("i1") is not None

    def test_remove(self, repo):
        store = DocumentStore(GitBackend(repo), "issues")
        store.add(make_issue("a"))
        store.add(make_issue("b"))
        store.remove(Issue(id="a"))
        assert [i.id for i in store.list()] == ["b"]

    def test_remove_missing_id_is_noop(self, repo):
        store = DocumentStore(GitBackend(repo), "issues")
        store.add(make_issue("a"))
        store.remove(Issue(id="zzz"))
        assert [i.id for i in store.list()] == ["a"]

    def test_remove_without_note_raises(self, repo):
        store = DocumentStore(GitBackend(repo), "issues")
        with pytest.raises(NotFoundError):
            store.remove(Issue(id="a"))

    def test_empty_repo_has_no_anchor(self, empty_repo):
        store = DocumentStore(GitBackend(empty_repo), "issues")
        with pytest.raises(AnchorError):
            store.add(make_issue())

    def test_malformed_blob_raises(self, repo):
        root = git(repo, "rev-list", "--max-parents=0", "HEAD")
        git(repo, "notes", "--ref", ISSUES_PATH, "add", "-m", "not json", root)
        store = DocumentStore(GitBackend(repo), "issues")
        with pytest.raises(DecodeError):
            store.list()
        with pytest.raises(DecodeError):
            store.add(make_issue())

    def test_stale_expected_tip_conflicts(self, repo):
        store = DocumentStore(GitBackend(repo), "issues")
        store.add(make_issue("a"))
        tip, content = store.snapshot()

        # Another writer gets in first
        DocumentStore(GitBackend(repo), "issues").add(make_issue("b"))

        with pytest.raises(ConflictError):
            store.write_blob(content, expected_tip=tip)
        assert {i.id for i in store.list()} == {"a", "b"}

    def test_first_write_conflicts_if_ref_appeared(self, repo):
        store = DocumentStore(GitBackend(repo), "issues")
        DocumentStore(GitBackend(repo), "issues").add(make_issue("b"))
        with pytest.raises(ConflictError):
            store.write_blob(b"{}", expected_tip=None)

    def test_staging_refs_are_cleaned_up(self, repo):
        store = DocumentStore(GitBackend(repo), "issues")
        store.add(make_issue())
        assert git(repo, "for-each-ref", STAGING_NAMESPACE) == ""

    def test_blind_write_without_compare_and_swap(self, repo):
        store = DocumentStore(GitBackend(repo), "issues", compare_and_swap=False)
        store.add(make_issue("a"))
        tip, _ = store.snapshot()
        DocumentStore(GitBackend(repo), "issues").add(make_issue("b"))
        store.write_blob(b"{}", expected_tip=tip)
        assert store.list() == []


class TestDocumentStore:

    def test_missing_note_is_empty(self, memory_backend):
        store = DocumentStore(memory_backend, "projects")
        assert store.list() == []
        assert store.get("nope") is None
        assert store.read_blob() is None

    def test_categories_are_separate(self, memory_backend):
        issues = DocumentStore(memory_backend, "issues")
        projects = DocumentStore(memory_backend, "projects")
        issues.add(make_issue())
        assert projects.list() == []

    def test_wrong_kind_rejected(self, memory_backend):
        store = DocumentStore(memory_backend, "issues")
        with pytest.raises(TypeError):
            store.add(Project(id="p"))

    def test_unsaved_record_rejected(self, memory_backend):
        store = DocumentStore(memory_backend, "issues")
        with pytest.raises(ValueError):
            store.add(Issue(title="no id"))

    def test_list_by_parent(self, memory_backend):
        store = DocumentStore(memory_backend, "comments")
        store.add(Comment(id="c1", parent_type="issue", parent_id="i1", content="a"))
        store.add(Comment(id="c2", parent_type="issue", parent_id="i2", content="b"))
        store.add(Comment(id="c3", parent_type="issue", parent_id="i1", content="c"))
        assert sorted(c.id for c in store.list_by_parent("i1")) == ["c1", "c3"]

    def test_list_by_parent_needs_parent_field(self, memory_backend):
        with pytest.raises(ValueError):
            DocumentStore(memory_backend, "projects").list_by_parent("x")

    def test_refpath(self, memory_backend):
        assert DocumentStore(memory_backend, ISSUES_PATH).refpath == ISSUES_PATH

    def test_satisfies_protocol(self, memory_backend):
        assert isinstance(DocumentStore(memory_backend, "issues"), DocumentStoreProtocol)
