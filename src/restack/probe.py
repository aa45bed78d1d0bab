"""Conflict probe: would a change apply cleanly on top of HEAD?"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from pathlib import Path

from restack.errors import RestackError
from restack.git_ops import Backend
from restack.models import ConflictProbeResult, StashEntry

logger = logging.getLogger(__name__)


class ConflictProbe:
    """Run trial applies through the backend.

    Probes against the same repository run concurrently up to
    ``concurrency`` at a time, or strictly one after another when the
    backend cannot run trial applies side by side.
    """

    def __init__(self, backend: Backend, *, concurrency: int = 4) -> None:
        self._backend = backend
        self._concurrency = max(1, concurrency) if backend.supports_concurrent_probes else 1
        self._limits: dict[str, asyncio.Semaphore] = {}

    def _limit(self, repo_root: str) -> asyncio.Semaphore:
        limit = self._limits.get(repo_root)
        if limit is None:
            limit = self._limits[repo_root] = asyncio.Semaphore(self._concurrency)
        return limit

    async def probe(self, candidate_ref: str, repo_root: str | Path) -> ConflictProbeResult:
        root = str(Path(repo_root))
        async with self._limit(root):
            logger.debug("Probing %s in %s", candidate_ref, root)
            try:
                paths = await asyncio.to_thread(self._backend.try_apply, candidate_ref, root)
            except RestackError as e:
                e.add_context(repo_root=root, operation="probe")
                raise
        return ConflictProbeResult(candidate_ref=candidate_ref, repo_root=root, conflicting_paths=sorted(set(paths)))

    async def probe_many(self, candidate_refs: Iterable[str], repo_root: str | Path) -> list[ConflictProbeResult]:
        """Probe several candidates; results keep the order of ``candidate_refs``."""
        return list(await asyncio.gather(*(self.probe(ref, repo_root) for ref in candidate_refs)))

    async def probe_stashes(self, repo_root: str | Path) -> list[tuple[StashEntry, ConflictProbeResult]]:
        """List the stash and flag every entry that would conflict when applied."""
        root = str(Path(repo_root))
        stashes = await asyncio.to_thread(self._backend.list_stashes, root)
        results = await self.probe_many([stash.ref for stash in stashes], root)
        conflicted = sum(1 for result in results if result.has_conflicts)
        if conflicted:
            logger.info("%d of %d stash entries would conflict in %s", conflicted, len(stashes), root)
        return list(zip(stashes, results))
