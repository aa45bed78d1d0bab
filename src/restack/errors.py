"""Error types raised by restack.

Every error carries the repository root and the operation it interrupted so
callers can render a message without parsing strings. ``kind`` is a stable
tag for dispatching on the error type.
"""

from __future__ import annotations

from typing import ClassVar


class RestackError(Exception):
    """Base class for all restack errors."""

    kind: ClassVar[str] = "error"

    def __init__(
        self,
        detail: str,
        *,
        repo_root: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.detail = detail
        self.repo_root = repo_root
        self.operation = operation
        super().__init__(self.render())

    def render(self) -> str:
        message = self.detail
        if self.operation:
            message = f"{self.operation}: {message}"
        if self.repo_root:
            message = f"{message} ({self.repo_root})"
        return message

    def add_context(self, *, repo_root: str | None = None, operation: str | None = None) -> None:
        """Fill in context fields that are not already set."""
        if self.repo_root is None:
            self.repo_root = repo_root
        if self.operation is None:
            self.operation = operation
        self.args = (self.render(),)


class NoRepository(RestackError):
    kind = "no-repository"


class DirtyWorkingTree(RestackError):
    kind = "dirty-working-tree"


class NoCommitsToPlan(RestackError):
    kind = "no-commits-to-plan"

    def __init__(self, base_branch: str, target_branch: str, **context: str | None) -> None:
        self.base_branch = base_branch
        self.target_branch = target_branch
        super().__init__(f"{target_branch} is up to date with {base_branch}", **context)


class InvalidTransition(RestackError):
    kind = "invalid-transition"

    def __init__(
        self,
        detail: str,
        *,
        commit_hash: str | None = None,
        disposition: str | None = None,
        **context: str | None,
    ) -> None:
        self.commit_hash = commit_hash
        self.disposition = disposition
        super().__init__(detail, **context)


class IncompletePlan(RestackError):
    kind = "incomplete-plan"

    def __init__(self, detail: str, *, commit_hashes: list[str] | None = None, **context: str | None) -> None:
        self.commit_hashes = commit_hashes or []
        super().__init__(detail, **context)


class NoActivePlan(RestackError):
    kind = "no-active-plan"


class Busy(RestackError):
    kind = "busy"


class BackendError(RestackError):
    """A git invocation failed or git itself could not be run."""

    kind = "backend-error"

    def __init__(
        self,
        detail: str,
        *,
        command: str | None = None,
        status: int | str | None = None,
        **context: str | None,
    ) -> None:
        self.command = command
        self.status = status
        super().__init__(detail, **context)
