"""Data models for restack."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Disposition(str, Enum):
    """Action applied to a commit when the plan is executed."""

    PICK = "pick"
    REWORD = "reword"
    SQUASH = "squash"
    FIXUP = "fixup"
    DROP = "drop"
    EDIT = "edit"

    @property
    def merges_into_previous(self) -> bool:
        return self in (Disposition.SQUASH, Disposition.FIXUP)


class RebaseStatus(str, Enum):
    """Lifecycle state of a rebase session for one repository."""

    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    PAUSED_CONFLICT = "paused-conflict"
    PAUSED_EDIT = "paused-edit"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_paused(self) -> bool:
        return self in (RebaseStatus.PAUSED_CONFLICT, RebaseStatus.PAUSED_EDIT)


class CommitDescriptor(BaseModel):
    """A commit between the base branch and the tip of the target branch."""

    model_config = ConfigDict(frozen=True)

    hash: str = Field(description="Full commit hash")
    short_hash: str = Field(description="Abbreviated commit hash for display")
    author: str = Field(description="Author name")
    date: str = Field(description="Commit date as ISO string")
    message: str = Field(description="Commit message subject")
    parents: list[str] = Field(default_factory=list, description="Parent commit hashes")
    file_count: int = Field(default=0, description="Number of files touched")
    additions: int = Field(default=0, description="Lines added")
    deletions: int = Field(default=0, description="Lines deleted")


class RebasePlanEntry(BaseModel):
    """A commit together with the disposition the user assigned to it."""

    commit: CommitDescriptor
    disposition: Disposition = Field(default=Disposition.PICK)
    message: str | None = Field(
        default=None, description="Replacement message, used when the disposition is reword"
    )

    @property
    def hash(self) -> str:
        return self.commit.hash

    @property
    def effective_message(self) -> str:
        """The message this commit will carry after the rebase."""
        if self.disposition is Disposition.REWORD and self.message:
            return self.message
        return self.commit.message


class RebasePlan(BaseModel):
    """Ordered commits to replay, newest first, with their dispositions."""

    repo_root: str = Field(description="Repository root the plan belongs to")
    base_branch: str = Field(description="Branch the commits are replayed onto")
    target_branch: str = Field(description="Branch whose history is rewritten")
    entries: list[RebasePlanEntry] = Field(description="Entries in display order (newest first)")
    original_order: list[str] = Field(
        default_factory=list, description="Commit hashes in the order the plan was built"
    )

    def model_post_init(self, __context: object) -> None:
        if not self.original_order:
            self.original_order = [entry.hash for entry in self.entries]

    def execution_order(self) -> list[RebasePlanEntry]:
        """Entries oldest first, the order the backend replays them in."""
        return list(reversed(self.entries))

    def hashes(self) -> list[str]:
        return [entry.hash for entry in self.entries]


class UpToDate(BaseModel):
    """Result of planning when the target has no commits ahead of the base."""

    repo_root: str
    base_branch: str
    target_branch: str


class RebaseInstruction(BaseModel):
    """One line of the instruction list sent to the backend."""

    commit_hash: str
    disposition: Disposition
    message: str | None = None


class RebaseState(BaseModel):
    """Snapshot of a session, suitable for rendering."""

    repo_root: str
    status: RebaseStatus = RebaseStatus.IDLE
    plan: RebasePlan | None = None
    conflict_files: list[str] = Field(default_factory=list)

    @property
    def is_in_progress(self) -> bool:
        return self.status.is_paused or self.status is RebaseStatus.EXECUTING

    @property
    def has_conflicts(self) -> bool:
        return self.status is RebaseStatus.PAUSED_CONFLICT

    @property
    def conflict_message(self) -> str | None:
        if not self.conflict_files:
            return None
        return f"{len(self.conflict_files)} file(s) have conflicts"


class ExecutionOutcome(BaseModel):
    """Where a rebase ended up after execute, continue or abort."""

    repo_root: str
    status: RebaseStatus
    conflict_files: list[str] = Field(default_factory=list)

    @property
    def conflicts_pending(self) -> bool:
        return self.status is RebaseStatus.PAUSED_CONFLICT

    @property
    def completed(self) -> bool:
        return self.status is RebaseStatus.COMPLETED


class BranchInfo(BaseModel):
    """A local or remote branch that can serve as a base."""

    name: str
    is_current: bool = False
    is_remote: bool = False
    last_commit_message: str = ""
    upstream: str | None = None


class StashEntry(BaseModel):
    """An entry of the stash list."""

    ref: str = Field(description="Stash reference, e.g. stash@{0}")
    message: str
    branch: str | None = None


class ConflictProbeResult(BaseModel):
    """Paths that would conflict if a candidate change were applied."""

    candidate_ref: str
    repo_root: str
    conflicting_paths: list[str] = Field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicting_paths)
