"""Interactive rebase state machine.

``RebaseEngine`` keeps one session per repository root. A session holds the
current plan and status; mutating operations run inside the session's
exclusive section and are rejected with ``Busy`` while another one is in
flight. Git is the source of truth for whether a rebase is running, so every
status read and every step of a rebase re-queries the backend instead of
trusting the cached status.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from restack import sequence
from restack.errors import (
    BackendError,
    Busy,
    DirtyWorkingTree,
    InvalidTransition,
    NoActivePlan,
    NoCommitsToPlan,
    NoRepository,
    RestackError,
)
from restack.git_ops import Backend
from restack.models import (
    BranchInfo,
    Disposition,
    ExecutionOutcome,
    RebasePlan,
    RebaseState,
    RebaseStatus,
    UpToDate,
)
from restack.planner import build_plan, rebuild_plan

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Session:
    """Plan and status of the rebase for one repository root."""

    repo_root: str
    status: RebaseStatus = RebaseStatus.IDLE
    plan: RebasePlan | None = None
    conflict_files: list[str] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Name of the mutating operation in flight; status reads only take the lock
    running: str | None = None

    def snapshot(self) -> RebaseState:
        return RebaseState(
            repo_root=self.repo_root,
            status=self.status,
            plan=self.plan.model_copy(deep=True) if self.plan is not None else None,
            conflict_files=list(self.conflict_files),
        )


class RebaseEngine:
    """Drive interactive rebases through a ``Backend``."""

    def __init__(self, backend: Backend, *, default_base: str | None = None) -> None:
        self._backend = backend
        self._default_base = default_base
        self._sessions: dict[str, Session] = {}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _session(self, repo_root: str | Path) -> Session:
        if not str(repo_root).strip():
            raise NoRepository("Repository root is empty")
        key = str(Path(repo_root))
        session = self._sessions.get(key)
        if session is None:
            session = self._sessions[key] = Session(repo_root=key)
        return session

    def close(self, repo_root: str | Path) -> None:
        """Forget the session for a repository that the caller has closed."""
        key = str(Path(repo_root))
        session = self._sessions.get(key)
        if session is None:
            return
        if session.running is not None or session.lock.locked():
            raise Busy("Cannot close while an operation is running", repo_root=key, operation="close")
        del self._sessions[key]

    @asynccontextmanager
    async def _exclusive(self, session: Session, operation: str) -> AsyncIterator[None]:
        if session.running is not None:
            raise Busy(
                f"Another rebase operation ({session.running}) is already running",
                repo_root=session.repo_root,
                operation=operation,
            )
        session.running = operation
        try:
            async with session.lock:
                yield
        except RestackError as e:
            e.add_context(repo_root=session.repo_root, operation=operation)
            raise
        finally:
            session.running = None

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        logger.debug("backend %s%r", getattr(fn, "__name__", fn), args)
        return await asyncio.to_thread(fn, *args)

    def _set_status(self, session: Session, status: RebaseStatus) -> None:
        if session.status is not status:
            logger.info("%s: %s -> %s", session.repo_root, session.status.value, status.value)
            session.status = status

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _read_pause(self, session: Session) -> None:
        files = await self._call(self._backend.get_unmerged_files, session.repo_root)
        session.conflict_files = sorted(files)
        self._set_status(session, RebaseStatus.PAUSED_CONFLICT if files else RebaseStatus.PAUSED_EDIT)

    def _finish(self, session: Session) -> None:
        # Rewritten history invalidates every hash in the plan
        session.plan = None
        session.conflict_files = []
        self._set_status(session, RebaseStatus.COMPLETED)

    async def _reconcile(self, session: Session, *, finished: RebaseStatus = RebaseStatus.COMPLETED) -> ExecutionOutcome:
        """Align the session with the repository after a rebase step.

        ``finished`` is the status to adopt when git reports no rebase in
        progress: ``COMPLETED`` after a step that ran, ``PLANNING`` after a
        start that never got going.
        """
        if await self._call(self._backend.is_rebase_in_progress, session.repo_root):
            await self._read_pause(session)
        elif finished is RebaseStatus.COMPLETED:
            self._finish(session)
        else:
            session.conflict_files = []
            self._set_status(session, finished)
        return self._outcome(session)

    async def _reconcile_after_failure(self, session: Session, error: BackendError, **kwargs: Any) -> None:
        logger.warning("Rebase step failed in %s: %s", session.repo_root, error.detail)
        try:
            await self._reconcile(session, **kwargs)
        except RestackError as e:
            logger.warning("Could not re-check rebase status in %s: %s", session.repo_root, e)

    async def _sync_with_backend(self, session: Session) -> None:
        in_progress = await self._call(self._backend.is_rebase_in_progress, session.repo_root)
        if in_progress:
            if not session.status.is_paused:
                logger.warning("Found a rebase in progress in %s", session.repo_root)
            await self._read_pause(session)
        elif session.status.is_paused or session.status is RebaseStatus.EXECUTING:
            logger.warning("Rebase in %s is no longer in progress; it was finished outside restack", session.repo_root)
            self._finish(session)

    async def _abort_backend(self, session: Session) -> None:
        """Abort the rebase in git; an error only counts if git is still rebasing."""
        root = session.repo_root
        failure: BackendError | None = None
        try:
            await self._call(self._backend.abort_rebase, root)
        except BackendError as e:
            logger.warning("Abort reported an error in %s: %s", root, e.detail)
            failure = e
        if await self._call(self._backend.is_rebase_in_progress, root):
            await self._read_pause(session)
            raise failure or BackendError("Rebase is still in progress after abort")

    async def _ensure_not_rebasing(self, session: Session) -> None:
        if await self._call(self._backend.is_rebase_in_progress, session.repo_root):
            await self._read_pause(session)
            raise InvalidTransition("A rebase is in progress; continue or abort it first")

    def _require_plan(self, session: Session) -> RebasePlan:
        if session.status.is_paused or session.status is RebaseStatus.EXECUTING:
            raise InvalidTransition("The plan cannot be changed while a rebase is in progress")
        if session.status is not RebaseStatus.PLANNING or session.plan is None:
            raise NoActivePlan("No rebase plan; start planning first")
        return session.plan

    async def _ensure_plan_current(self, session: Session, plan: RebasePlan) -> None:
        """Refuse a plan whose commits no longer match the branch.

        The todo list only names planned commits, so a commit added or
        rewritten since planning would otherwise be dropped by git.
        """
        commits = await self._call(
            self._backend.commits_ahead_of_base, session.repo_root, plan.base_branch, plan.target_branch
        )
        current = [commit.hash for commit in reversed(commits)]
        if current != plan.original_order:
            added = len(set(current) - set(plan.original_order))
            missing = len(set(plan.original_order) - set(current))
            logger.warning(
                "Plan for %s is stale in %s: %d new, %d gone", plan.target_branch, session.repo_root, added, missing
            )
            raise InvalidTransition(
                f"Plan is out of date: {plan.target_branch} changed since it was planned "
                f"({added} new, {missing} gone). Reset or plan again"
            )

    def _outcome(self, session: Session, status: RebaseStatus | None = None) -> ExecutionOutcome:
        return ExecutionOutcome(
            repo_root=session.repo_root,
            status=status or session.status,
            conflict_files=list(session.conflict_files),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_state(self, repo_root: str | Path) -> RebaseState:
        """Current plan and status, reconciled with the repository.

        Waits for an in-flight operation instead of reporting a stale status.
        """
        session = self._session(repo_root)
        async with session.lock:
            try:
                await self._sync_with_backend(session)
            except RestackError as e:
                e.add_context(repo_root=session.repo_root, operation="status")
                raise
            return session.snapshot()

    async def base_candidates(self, repo_root: str | Path) -> list[BranchInfo]:
        """Branches the current branch could be rebased onto, default first."""
        root = self._session(repo_root).repo_root
        branches = await self._call(self._backend.list_branches, root)
        current = await self._call(self._backend.get_current_branch, root)
        default = self._default_base or await self._call(self._backend.get_default_branch, root)

        candidates = [b for b in branches if not b.is_current and b.name != current]
        candidates.sort(key=lambda b: b.name != default)
        return candidates

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def start_planning(
        self,
        repo_root: str | Path,
        base_branch: str | None = None,
        target_branch: str | None = None,
    ) -> RebaseState:
        """Build a fresh plan of the commits ``target_branch`` has ahead of ``base_branch``.

        The target defaults to the checked-out branch and the base to the
        configured or detected default branch.
        """
        session = self._session(repo_root)
        async with self._exclusive(session, "start-planning"):
            await self._ensure_not_rebasing(session)
            root = session.repo_root

            target = target_branch or await self._call(self._backend.get_current_branch, root)
            if not target:
                raise BackendError("Not currently on a branch")
            base = base_branch or self._default_base or await self._call(self._backend.get_default_branch, root)
            if not base:
                raise BackendError("Could not detect default branch (main/master)")
            if await self._call(self._backend.has_uncommitted_changes, root):
                raise DirtyWorkingTree("You have uncommitted changes. Commit or stash them before rebasing")

            result = await asyncio.to_thread(build_plan, self._backend, root, base, target)
            if isinstance(result, UpToDate):
                session.plan = None
                self._set_status(session, RebaseStatus.IDLE)
                raise NoCommitsToPlan(base, target)

            session.plan = result
            session.conflict_files = []
            self._set_status(session, RebaseStatus.PLANNING)
            logger.info("Ready to rebase %d commit(s) of %s onto %s", len(result.entries), target, base)
            return session.snapshot()

    async def fetch_and_plan(self, repo_root: str | Path, base_branch: str | None = None) -> RebaseState:
        """Fetch from the remotes, then start planning against the refreshed base."""
        session = self._session(repo_root)
        async with self._exclusive(session, "fetch"):
            await self._call(self._backend.fetch_remote, session.repo_root)
        return await self.start_planning(repo_root, base_branch)

    async def adopt_plan(self, plan: RebasePlan) -> RebaseState:
        """Resume editing a plan saved by the caller, e.g. across CLI invocations."""
        session = self._session(plan.repo_root)
        async with self._exclusive(session, "adopt-plan"):
            await self._ensure_not_rebasing(session)
            if session.status not in (RebaseStatus.IDLE, RebaseStatus.PLANNING):
                raise InvalidTransition(f"Cannot load a plan while the session is {session.status.value}")
            session.plan = plan.model_copy(deep=True, update={"repo_root": session.repo_root})
            session.conflict_files = []
            self._set_status(session, RebaseStatus.PLANNING)
            return session.snapshot()

    async def change_base(self, repo_root: str | Path, base_branch: str) -> RebaseState:
        """Rebuild the plan against another base, keeping edits of surviving commits."""
        session = self._session(repo_root)
        async with self._exclusive(session, "change-base"):
            plan = self._require_plan(session)
            result = await asyncio.to_thread(rebuild_plan, self._backend, plan, base_branch)
            if isinstance(result, UpToDate):
                raise NoCommitsToPlan(base_branch, plan.target_branch)
            session.plan = result
            logger.info("Base of %s changed to %s", plan.target_branch, base_branch)
            return session.snapshot()

    async def set_disposition(
        self,
        repo_root: str | Path,
        commit_hash: str,
        disposition: Disposition | str,
        message: str | None = None,
    ) -> RebaseState:
        session = self._session(repo_root)
        async with self._exclusive(session, "set-disposition"):
            sequence.set_disposition(self._require_plan(session), commit_hash, disposition, message)
            return session.snapshot()

    async def set_message(self, repo_root: str | Path, commit_hash: str, message: str) -> RebaseState:
        session = self._session(repo_root)
        async with self._exclusive(session, "set-message"):
            sequence.set_message(self._require_plan(session), commit_hash, message)
            return session.snapshot()

    async def move(self, repo_root: str | Path, commit_hash: str, offset: int) -> RebaseState:
        """Move a commit by ``offset`` places in display order (negative is up)."""
        session = self._session(repo_root)
        async with self._exclusive(session, "move"):
            sequence.move_entry(self._require_plan(session), commit_hash, offset)
            return session.snapshot()

    async def reset(
        self,
        repo_root: str | Path,
        base_branch: str | None = None,
        target_branch: str | None = None,
    ) -> RebaseState:
        """Throw away all edits and rebuild the plan on the same base.

        A paused rebase is aborted first, which restores the original commits.
        ``base_branch`` and ``target_branch`` are used when the session has no
        plan of its own, e.g. for a rebase found after a restart.
        """
        session = self._session(repo_root)
        async with self._exclusive(session, "reset"):
            root = session.repo_root
            plan = session.plan
            if await self._call(self._backend.is_rebase_in_progress, root):
                await self._abort_backend(session)
            elif plan is None:
                raise NoActivePlan("No rebase plan to reset")

            if plan is not None:
                base, target = plan.base_branch, plan.target_branch
            else:
                # Resumed rebase: the plan that started it is unknown
                target = target_branch or await self._call(self._backend.get_current_branch, root)
                base = (
                    base_branch
                    or self._default_base
                    or await self._call(self._backend.get_default_branch, root)
                )
                if not target or not base:
                    session.conflict_files = []
                    self._set_status(session, RebaseStatus.IDLE)
                    raise NoActivePlan("Rebase aborted; run planning again to choose a base")

            result = await asyncio.to_thread(build_plan, self._backend, root, base, target)
            if isinstance(result, UpToDate):
                session.plan = None
                session.conflict_files = []
                self._set_status(session, RebaseStatus.IDLE)
                raise NoCommitsToPlan(base, target)
            session.plan = result
            session.conflict_files = []
            self._set_status(session, RebaseStatus.PLANNING)
            return session.snapshot()

    async def acknowledge(self, repo_root: str | Path) -> RebaseState:
        """Return a completed or aborted session to idle."""
        session = self._session(repo_root)
        async with self._exclusive(session, "acknowledge"):
            if session.status in (RebaseStatus.COMPLETED, RebaseStatus.ABORTED):
                self._set_status(session, RebaseStatus.IDLE)
            return session.snapshot()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, repo_root: str | Path) -> ExecutionOutcome:
        """Run the plan as a single interactive rebase.

        The plan is validated before git is touched. Afterwards the session
        status is taken from the repository: paused on a conflict, paused for
        an edit stop, or completed.
        """
        session = self._session(repo_root)
        async with self._exclusive(session, "execute"):
            plan = self._require_plan(session)
            sequence.validate_for_execution(plan)
            instructions = sequence.to_instructions(plan)
            root = session.repo_root

            current = await self._call(self._backend.get_current_branch, root)
            if current != plan.target_branch:
                raise InvalidTransition(
                    f"{current or 'A detached HEAD'} is checked out but the plan rewrites {plan.target_branch}"
                )
            await self._ensure_plan_current(session, plan)
            if await self._call(self._backend.has_uncommitted_changes, root):
                raise DirtyWorkingTree("You have uncommitted changes. Commit or stash them before rebasing")

            self._set_status(session, RebaseStatus.EXECUTING)
            logger.info("Rebasing %d commit(s) of %s onto %s", len(instructions), plan.target_branch, plan.base_branch)
            try:
                await self._call(self._backend.start_multi_step_rebase, root, plan.base_branch, instructions)
            except BackendError as e:
                await self._reconcile_after_failure(session, e, finished=RebaseStatus.PLANNING)
                raise
            return await self._reconcile(session)

    async def continue_execution(self, repo_root: str | Path) -> ExecutionOutcome:
        """Resume a paused rebase once conflicts are resolved or the edit is done."""
        session = self._session(repo_root)
        async with self._exclusive(session, "continue"):
            root = session.repo_root
            if not await self._call(self._backend.is_rebase_in_progress, root):
                if session.status.is_paused or session.status is RebaseStatus.EXECUTING:
                    logger.info("Rebase in %s has already completed", root)
                    self._finish(session)
                    return self._outcome(session)
                if session.status is RebaseStatus.PLANNING:
                    raise InvalidTransition("The plan has not been executed yet")
                raise NoActivePlan("No rebase in progress")

            self._set_status(session, RebaseStatus.EXECUTING)
            try:
                await self._call(self._backend.continue_rebase, root)
            except BackendError as e:
                await self._reconcile_after_failure(session, e)
                raise
            return await self._reconcile(session)

    async def abort_execution(self, repo_root: str | Path) -> ExecutionOutcome:
        """Abort the rebase in progress and drop the plan.

        An abort that reports an error still succeeds if the repository turns
        out not to be rebasing any more.
        """
        session = self._session(repo_root)
        async with self._exclusive(session, "abort"):
            if await self._call(self._backend.is_rebase_in_progress, session.repo_root):
                await self._abort_backend(session)
            elif session.status is RebaseStatus.IDLE and session.plan is None:
                raise NoActivePlan("No rebase to abort")

            session.plan = None
            session.conflict_files = []
            self._set_status(session, RebaseStatus.ABORTED)
            outcome = self._outcome(session)
            self._set_status(session, RebaseStatus.IDLE)
            return outcome
