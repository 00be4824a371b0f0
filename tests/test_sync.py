"""
Tests for moving notes between clones.

Every test runs against a bare remote and two clones of it (alice and
bob), so fetch, push and fast-forward behave exactly as git does them.
"""

import pytest

from tally.api import Tracker
from tally.git_backend import GitBackend
from tally.sync import REMOTE_TRACKING_NAMESPACE, RefSynchronizer, remote_tracking_ref
from tally.types import ISSUES_PATH, NOTES_NAMESPACE

from conftest import git, requires_git


pytestmark = requires_git


@pytest.fixture
def trackers(remote_pair):
    """Trackers for both clones: (bare remote, alice, bob)."""
    bare, alice_path, bob_path = remote_pair
    with Tracker(alice_path) as alice, Tracker(bob_path) as bob:
        yield bare, alice, bob


def refs(path, namespace=NOTES_NAMESPACE):
    return git(path, "for-each-ref", "--format=%(refname)", namespace).split()


# -----------------------------------------------------------------------------
# RefSynchronizer
# -----------------------------------------------------------------------------

class TestRefSynchronizer:

    def test_push_publishes_categories(self, trackers):
        bare, alice, _ = trackers
        alice.create_issue("Crash")
        RefSynchronizer(GitBackend(alice.config.repo_path)).push("origin")

        assert refs(bare) == [ISSUES_PATH]
        assert RefSynchronizer(GitBackend(alice.config.repo_path)).remote_categories("origin") == ["issues"]

    def test_fetch_category_leaves_local_ref_alone(self, trackers):
        _, alice, bob = trackers
        alice.create_issue("Crash")
        alice.push()

        synchronizer = RefSynchronizer(GitBackend(bob.config.repo_path))
        tracking = synchronizer.fetch_category("origin", "issues")

        assert tracking == remote_tracking_ref("origin", "issues")
        assert refs(bob.config.repo_path, REMOTE_TRACKING_NAMESPACE) == [tracking]
        assert refs(bob.config.repo_path) == []

    def test_fetch_missing_category(self, trackers):
        _, _, bob = trackers
        assert RefSynchronizer(GitBackend(bob.config.repo_path)).fetch_category("origin", "issues") is None

    def test_delete_local_and_remote_refs(self, trackers):
        bare, alice, _ = trackers
        alice.create_project("Core")
        alice.create_issue("Crash")
        alice.push()
        synchronizer = RefSynchronizer(GitBackend(alice.config.repo_path))

        deleted = synchronizer.delete_remote_refs("origin")
        assert sorted(deleted) == sorted(refs(alice.config.repo_path))
        assert refs(bare) == []

        assert len(synchronizer.delete_local_refs()) == 2
        assert refs(alice.config.repo_path) == []
        assert synchronizer.delete_local_refs() == []


# -----------------------------------------------------------------------------
# Tracker.sync
# -----------------------------------------------------------------------------

class TestTrackerSync:

    def test_first_sync_into_empty_remote(self, trackers):
        bare, alice, _ = trackers
        alice.create_issue("Crash")
        assert alice.sync() == {}
        assert refs(bare) == [ISSUES_PATH]

    def test_concurrent_creates_converge(self, trackers):
        _, alice, bob = trackers
        mine = alice.create_issue("From alice")
        theirs = bob.create_issue("From bob")

        alice.sync()
        stats = bob.sync()
        assert stats["issues"].added == [mine.id]
        stats = alice.sync()
        assert stats["issues"].added == [theirs.id]

        for tr in (alice, bob):
            assert {i.id for i in tr.list_issues()} == {mine.id, theirs.id}

    def test_later_edit_wins_on_both_sides(self, trackers):
        _, alice, bob = trackers
        issue = alice.create_issue("Crash")
        alice.sync()
        bob.sync()

        alice.close_record(alice.get("issues", issue.id))
        edited = bob.get("issues", issue.id)
        edited.title = "Crash on startup"
        bob.save(edited)

        alice.sync()
        assert bob.sync()["issues"].replaced == []
        assert alice.sync()["issues"].replaced == [issue.id]

        for tr in (alice, bob):
            record = tr.get("issues", issue.id)
            # the later edit wins whole, so alice's close is gone too
            assert record.title == "Crash on startup"
            assert not record.is_closed

    def test_delete_propagates_over_newer_edit(self, trackers):
        _, alice, bob = trackers
        issue = alice.create_issue("Crash")
        alice.sync()
        bob.sync()

        bob.delete(bob.get("issues", issue.id))
        edited = alice.get("issues", issue.id)
        edited.title = "Edited after the delete"
        alice.save(edited)

        bob.sync()
        assert alice.sync()["issues"].tombstoned == [issue.id]

        record = alice.get("issues", issue.id)
        assert record.is_deleted
        assert record.title == "Edited after the delete"
        assert alice.list_issues() == []

    def test_restore_is_undone_by_sync_with_tombstone(self, trackers):
        _, alice, bob = trackers
        issue = alice.create_issue("Crash")
        alice.sync()
        bob.sync()
        bob.delete(bob.get("issues", issue.id))
        bob.sync()
        alice.sync()

        alice.restore(alice.resolve("issues", issue.id, include_deleted=True))
        assert [i.id for i in alice.list_issues()] == [issue.id]

        assert alice.sync()["issues"].tombstoned == [issue.id]
        assert alice.get("issues", issue.id).is_deleted

    def test_sync_without_push(self, trackers):
        bare, alice, bob = trackers
        alice.create_issue("Crash")
        alice.sync()
        bob.create_issue("Local only")

        bob.sync(push=False)

        assert len(bob.list_issues()) == 2
        assert git(bare, "rev-parse", ISSUES_PATH) != git(bob.config.repo_path, "rev-parse", ISSUES_PATH)


class TestDeleteRefs:

    def test_local_and_remote(self, trackers):
        bare, alice, _ = trackers
        alice.create_issue("Crash")
        alice.sync()
        alice.sync()
        assert refs(alice.config.repo_path, REMOTE_TRACKING_NAMESPACE)

        deleted = alice.delete_refs("origin")

        assert f"origin:{ISSUES_PATH}" in deleted
        assert ISSUES_PATH in deleted
        assert refs(bare) == []
        assert refs(alice.config.repo_path) == []
        assert refs(alice.config.repo_path, REMOTE_TRACKING_NAMESPACE) == []
        assert alice.list_issues() == []

    def test_remote_only(self, trackers):
        bare, alice, _ = trackers
        alice.create_issue("Crash")
        alice.sync()

        assert alice.delete_refs("origin", local=False) == [f"origin:{ISSUES_PATH}"]
        assert refs(bare) == []
        assert len(alice.list_issues()) == 1

    def test_other_clone_repopulates_remote(self, trackers):
        bare, alice, bob = trackers
        issue = alice.create_issue("Crash")
        alice.sync()
        bob.sync()

        alice.delete_refs("origin")
        assert bob.sync() == {}
        assert refs(bare) == [ISSUES_PATH]

        alice.sync()
        assert [i.id for i in alice.list_issues()] == [issue.id]
