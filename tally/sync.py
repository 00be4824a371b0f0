"""
Reference synchronizer: move notes refs between repositories.

push() sends the whole notes namespace; pull() fetches the issues ref
straight into the local one. Neither resolves divergence. Reconciling two
replicas is the merge engine's job, run by the caller against the blobs
that a fetch leaves behind (see fetch_category() and Tracker.sync()).
"""

import logging
from typing import Optional

from .protocol import BackendProtocol
from .types import CATEGORY_PATHS, ISSUES_PATH, NOTES_NAMESPACE

logger = logging.getLogger(__name__)

NAMESPACE_WILDCARD = f"{NOTES_NAMESPACE}/*"

# Fetched copies of remote category refs: <prefix>/<remote>/<category>
REMOTE_TRACKING_NAMESPACE = "refs/notes/tally-remotes"


def remote_tracking_ref(remote: str, category: str) -> str:
    """Local ref holding the last fetched copy of a remote category."""
    return f"{REMOTE_TRACKING_NAMESPACE}/{remote}/{category}"


class RefSynchronizer:
    """Push and fetch of tally's notes refs against a named remote."""

    def __init__(self, backend: BackendProtocol):
        self._backend = backend

    def push(self, remote: str) -> None:
        """
        Push every category ref to the same path on remote.

        Raises:
            BackendError: If the push fails (e.g. non-fast-forward)
        """
        refspec = f"{NAMESPACE_WILDCARD}:{NAMESPACE_WILDCARD}"
        logger.info("pushing %s to %s", refspec, remote)
        self._backend.push(remote, refspec)

    def pull(self, remote: str) -> None:
        """
        Fetch remote's issues ref into the local issues ref.

        Raises:
            BackendError: If the fetch fails (e.g. the refs diverged)
        """
        refspec = f"{ISSUES_PATH}:{ISSUES_PATH}"
        logger.info("fetching %s from %s", refspec, remote)
        self._backend.fetch(remote, refspec)

    def remote_categories(self, remote: str) -> list[str]:
        """Categories that exist as notes refs on remote."""
        refs = set(self._backend.ls_remote(remote, NAMESPACE_WILDCARD))
        return [category for category, path in CATEGORY_PATHS.items() if path in refs]

    def fetch_category(self, remote: str, category: str) -> Optional[str]:
        """
        Fetch remote's category ref into its remote-tracking ref.

        The tracking ref is force-updated; the local category ref is not
        touched.

        Returns:
            The tracking ref name, or None if remote has no such category

        Raises:
            BackendError: If the fetch fails
        """
        if category not in self.remote_categories(remote):
            logger.info("%s has no %s", remote, category)
            return None
        tracking = remote_tracking_ref(remote, category)
        self._backend.fetch(remote, f"+{CATEGORY_PATHS[category]}:{tracking}")
        return tracking

    def delete_local_refs(self, namespace: str = NOTES_NAMESPACE) -> list[str]:
        """
        Delete every local ref under namespace.

        Returns:
            Names of the deleted refs
        """
        deleted = []
        for ref in self._backend.for_each_ref(namespace):
            self._backend.delete_ref(ref)
            logger.info("deleted local ref %s", ref)
            deleted.append(ref)
        return deleted

    def delete_remote_refs(self, remote: str, namespace: str = NOTES_NAMESPACE) -> list[str]:
        """
        Delete every ref under namespace on remote.

        Returns:
            Names of the deleted refs
        """
        deleted = []
        for ref in self._backend.ls_remote(remote, f"{namespace}/*"):
            self._backend.push(remote, f":{ref}")
            logger.info("deleted %s on %s", ref, remote)
            deleted.append(ref)
        return deleted
