"""Building rebase plans from the commits a branch has ahead of its base."""

from __future__ import annotations

import logging

from restack.git_ops import Backend
from restack.models import Disposition, RebasePlan, RebasePlanEntry, UpToDate

logger = logging.getLogger(__name__)


def build_plan(backend: Backend, repo_root: str, base_branch: str, target_branch: str) -> RebasePlan | UpToDate:
    """Build a fresh plan with every commit set to pick.

    The backend lists commits oldest first; the plan stores them newest
    first. Returns ``UpToDate`` when the target has nothing ahead of the base.
    """
    commits = backend.commits_ahead_of_base(repo_root, base_branch, target_branch)
    if not commits:
        logger.info("%s is up to date with %s", target_branch, base_branch)
        return UpToDate(repo_root=repo_root, base_branch=base_branch, target_branch=target_branch)

    entries = [RebasePlanEntry(commit=commit) for commit in reversed(commits)]
    logger.debug("Planned %d commits of %s onto %s", len(entries), target_branch, base_branch)
    return RebasePlan(
        repo_root=repo_root,
        base_branch=base_branch,
        target_branch=target_branch,
        entries=entries,
    )


def rebuild_plan(backend: Backend, previous: RebasePlan, base_branch: str) -> RebasePlan | UpToDate:
    """Rebuild ``previous`` against a new base, keeping the user's edits.

    Dispositions and messages carry over for commits whose hash is still
    part of the new commit set. A squash or fixup that lands on the oldest
    commit is turned back into a pick.
    """
    result = build_plan(backend, previous.repo_root, base_branch, previous.target_branch)
    if isinstance(result, UpToDate):
        return result

    edits = {entry.hash: entry for entry in previous.entries}
    for entry in result.entries:
        old = edits.get(entry.hash)
        if old is not None:
            entry.disposition = old.disposition
            entry.message = old.message

    oldest = result.entries[-1]
    if oldest.disposition.merges_into_previous:
        logger.warning(
            "%s is now the oldest commit; resetting %s to pick",
            oldest.commit.short_hash,
            oldest.disposition.value,
        )
        oldest.disposition = Disposition.PICK
    return result
