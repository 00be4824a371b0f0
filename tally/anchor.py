"""
Anchor resolution.

All category notes attach to one commit: the root of the history reachable
from HEAD. As long as history below it is never rewritten, the anchor stays
put across later commits, merges and rebases, so every clone finds the
same blobs without tracking per-branch state.
"""

import logging
from typing import Optional

from .errors import AnchorError
from .protocol import BackendProtocol

logger = logging.getLogger(__name__)


def resolve_anchor(backend: BackendProtocol, *, pinned: Optional[str] = None) -> str:
    """
    Find the commit that category notes are attached to.

    Args:
        backend: Version-control backend for the repository
        pinned: Explicit anchor from configuration; must name an existing commit

    Returns:
        The anchor commit's object id

    Raises:
        AnchorError: If the repository has no commits, the pinned anchor does
            not exist, or the history has several roots and none is pinned
    """
    if pinned:
        commit = backend.resolve_ref(f"{pinned}^{{commit}}")
        if commit is None:
            raise AnchorError(f"Pinned anchor {pinned!r} is not a commit in this repository")
        return commit

    if backend.resolve_ref("HEAD") is None:
        raise AnchorError("Repository has no commits; create one before storing records")

    roots = backend.root_commits("HEAD")
    if not roots:
        raise AnchorError("No root commit reachable from HEAD")
    if len(roots) > 1:
        raise AnchorError(
            f"History has {len(roots)} root commits ({', '.join(r[:12] for r in roots)}); "
            "pin one with `anchor = \"<commit>\"` in .tally.toml"
        )
    logger.debug("anchor: %s", roots[0])
    return roots[0]
