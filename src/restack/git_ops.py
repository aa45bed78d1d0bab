"""Git operations layer for restack.

``Backend`` is the contract the rebase engine consumes; ``GitBackend``
implements it on top of GitPython. All methods are synchronous and take the
repository root explicitly so a single backend can serve several sessions.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import shutil
import tempfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from restack.errors import BackendError, NoRepository
from restack.models import BranchInfo, CommitDescriptor, Disposition, RebaseInstruction, StashEntry

logger = logging.getLogger(__name__)

# Candidates probed, in order, when origin/HEAD is not set
DEFAULT_BRANCH_CANDIDATES = ("origin/main", "origin/master", "main", "master")

# Scratch directory inside the git dir holding reword messages for a running rebase
STATE_DIRNAME = "restack"

# First git release whose merge-tree accepts --merge-base
MERGE_TREE_BASE_VERSION = (2, 40)

_STASH_SUBJECT = re.compile(r"^(?:WIP on|On) ([^:]+): (.*)$")


class Backend(Protocol):
    """Version-control operations the rebase engine relies on."""

    supports_concurrent_probes: bool

    def get_current_branch(self, repo_root: str) -> str | None: ...

    def get_default_branch(self, repo_root: str) -> str | None: ...

    def list_branches(self, repo_root: str) -> list[BranchInfo]: ...

    def commits_ahead_of_base(self, repo_root: str, base: str, target: str) -> list[CommitDescriptor]: ...

    def has_uncommitted_changes(self, repo_root: str) -> bool: ...

    def start_multi_step_rebase(
        self, repo_root: str, base: str, instructions: Sequence[RebaseInstruction]
    ) -> None: ...

    def continue_rebase(self, repo_root: str) -> None: ...

    def abort_rebase(self, repo_root: str) -> None: ...

    def is_rebase_in_progress(self, repo_root: str) -> bool: ...

    def get_unmerged_files(self, repo_root: str) -> list[str]: ...

    def try_apply(self, candidate_ref: str, repo_root: str) -> list[str]: ...

    def list_stashes(self, repo_root: str) -> list[StashEntry]: ...

    def fetch_remote(self, repo_root: str) -> None: ...


def get_repo(path: str | Path = ".") -> Repo:
    """Get the git repository at the given path.

    Args:
        path: Path inside the repository. Defaults to current directory.

    Returns:
        The git Repo object.

    Raises:
        NoRepository: If the path is not inside a git repository.
    """
    try:
        return Repo(path, search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        raise NoRepository(f"Not a git repository: {path}") from e


def get_repo_root(repo: Repo) -> Path:
    """Get the root directory of the repository."""
    return Path(repo.working_dir)


def resolve_repo_root(path: str | Path = ".") -> str:
    """Resolve any path inside a repository to the repository root."""
    repo = get_repo(path)
    try:
        return str(get_repo_root(repo))
    finally:
        repo.close()


def render_todo(instructions: Sequence[RebaseInstruction], message_files: dict[str, Path]) -> str:
    """Render instructions as a ``git rebase -i`` todo list.

    Instructions must already be in execution order. Rewording is expressed
    as a pick followed by an amend, so no interactive editor is needed.
    """
    lines: list[str] = []
    for instruction in instructions:
        if instruction.disposition is Disposition.REWORD:
            lines.append(f"pick {instruction.commit_hash}")
            message_file = shlex.quote(str(message_files[instruction.commit_hash]))
            lines.append(f"exec git commit --amend --allow-empty --no-verify --quiet -F {message_file}")
        else:
            lines.append(f"{instruction.disposition.value} {instruction.commit_hash}")
    return "\n".join(lines) + "\n"


class GitBackend:
    """Backend implementation driving the git executable through GitPython."""

    # Trial applies use merge-tree or a scratch index, never the real index or working tree
    supports_concurrent_probes = True

    @contextmanager
    def _open(self, repo_root: str, operation: str) -> Iterator[Repo]:
        try:
            repo = Repo(repo_root)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise NoRepository(
                f"Not a git repository: {repo_root}", repo_root=repo_root, operation=operation
            ) from e
        try:
            yield repo
        except GitCommandError as e:
            raise _backend_error(e, repo_root, operation) from e
        finally:
            repo.close()

    def get_git_dir(self, repo_root: str) -> Path:
        with self._open(repo_root, "git-dir") as repo:
            return Path(repo.git_dir)

    def get_current_branch(self, repo_root: str) -> str | None:
        with self._open(repo_root, "current-branch") as repo:
            if repo.head.is_detached:
                return None
            return repo.active_branch.name

    def get_default_branch(self, repo_root: str) -> str | None:
        with self._open(repo_root, "default-branch") as repo:
            try:
                ref = repo.git.symbolic_ref("refs/remotes/origin/HEAD").strip()
                if ref.startswith("refs/remotes/origin/"):
                    return ref[len("refs/remotes/origin/"):]
            except GitCommandError:
                logger.debug("origin/HEAD is not set in %s", repo_root)

            for candidate in DEFAULT_BRANCH_CANDIDATES:
                try:
                    repo.git.rev_parse("--verify", "--quiet", f"{candidate}^{{commit}}")
                    return candidate
                except GitCommandError:
                    continue
            return None

    def list_branches(self, repo_root: str) -> list[BranchInfo]:
        """List local and remote branches, most recently committed first.

        Remote branches that have a local counterpart are skipped.
        """
        fmt = "%(refname)|%(HEAD)|%(upstream:short)|%(subject)"
        with self._open(repo_root, "list-branches") as repo:
            output = repo.git.for_each_ref("--sort=-committerdate", f"--format={fmt}", "refs/heads", "refs/remotes")

        local: list[BranchInfo] = []
        remote: list[BranchInfo] = []
        for line in output.splitlines():
            parts = line.split("|", 3)
            if len(parts) < 4:
                continue
            refname, head, upstream, subject = parts
            if refname.startswith("refs/heads/"):
                local.append(BranchInfo(
                    name=refname[len("refs/heads/"):],
                    is_current=head.strip() == "*",
                    last_commit_message=subject,
                    upstream=upstream or None,
                ))
            elif refname.startswith("refs/remotes/") and not refname.endswith("/HEAD"):
                remote.append(BranchInfo(
                    name=refname[len("refs/remotes/"):],
                    is_remote=True,
                    last_commit_message=subject,
                ))

        local_names = {branch.name for branch in local}
        remote = [b for b in remote if b.name.split("/", 1)[-1] not in local_names]
        return local + remote

    def commits_ahead_of_base(self, repo_root: str, base: str, target: str) -> list[CommitDescriptor]:
        """Commits reachable from ``target`` but not from ``base``, oldest first."""
        with self._open(repo_root, "commits-ahead") as repo:
            try:
                merge_base = repo.git.merge_base(base, target).strip()
            except GitCommandError as e:
                raise BackendError(
                    f"Could not find common ancestor between {target} and {base}",
                    command="git merge-base",
                    status=e.status,
                    repo_root=repo_root,
                    operation="commits-ahead",
                ) from e

            commits: list[CommitDescriptor] = []
            for commit in repo.iter_commits(f"{merge_base}..{target}", reverse=True):
                total = commit.stats.total
                commits.append(CommitDescriptor(
                    hash=commit.hexsha,
                    short_hash=commit.hexsha[:7],
                    author=commit.author.name or "",
                    date=commit.committed_datetime.isoformat(),
                    message=commit.message.strip().split("\n")[0],
                    parents=[parent.hexsha for parent in commit.parents],
                    file_count=total.get("files", 0),
                    additions=total.get("insertions", 0),
                    deletions=total.get("deletions", 0),
                ))
            return commits

    def has_uncommitted_changes(self, repo_root: str) -> bool:
        with self._open(repo_root, "status") as repo:
            return repo.is_dirty(untracked_files=True)

    def start_multi_step_rebase(
        self, repo_root: str, base: str, instructions: Sequence[RebaseInstruction]
    ) -> None:
        """Start ``git rebase -i`` onto ``base`` with a prepared todo list.

        Returns normally when the rebase completes or stops (conflict or edit);
        the caller inspects the repository to find out which.
        """
        if not instructions:
            raise BackendError("No commits to rebase", repo_root=repo_root, operation="rebase")

        with self._open(repo_root, "rebase") as repo:
            state_dir = Path(repo.git_dir) / STATE_DIRNAME
            shutil.rmtree(state_dir, ignore_errors=True)
            message_files = _write_messages(state_dir, instructions)

            fd, todo_path = tempfile.mkstemp(prefix="restack-todo-", suffix=".txt")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(render_todo(instructions, message_files))
                env = {
                    "GIT_SEQUENCE_EDITOR": f"cp {shlex.quote(todo_path)}",
                    "GIT_EDITOR": "true",
                }
                logger.debug("Starting rebase of %d commits onto %s", len(instructions), base)
                self._run_step(repo, repo_root, "rebase", env, "-i", base)
            finally:
                os.unlink(todo_path)

            self._cleanup_if_finished(repo)

    def continue_rebase(self, repo_root: str) -> None:
        with self._open(repo_root, "continue") as repo:
            self._run_step(repo, repo_root, "continue", {"GIT_EDITOR": "true"}, "--continue")
            self._cleanup_if_finished(repo)

    def abort_rebase(self, repo_root: str) -> None:
        with self._open(repo_root, "abort") as repo:
            try:
                repo.git.rebase("--abort")
            finally:
                self._cleanup_if_finished(repo)

    def is_rebase_in_progress(self, repo_root: str) -> bool:
        with self._open(repo_root, "rebase-status") as repo:
            return _rebase_in_progress(repo)

    def get_unmerged_files(self, repo_root: str) -> list[str]:
        with self._open(repo_root, "unmerged-files") as repo:
            output = repo.git.diff("--name-only", "--diff-filter=U")
            return [line for line in output.splitlines() if line.strip()]

    def try_apply(self, candidate_ref: str, repo_root: str) -> list[str]:
        """Report the paths that would conflict if ``candidate_ref`` were applied.

        The candidate's changes relative to its first parent are merged with
        HEAD using ``git merge-tree`` (git 2.40+) or a scratch index on older
        git; paths the candidate touches that also carry uncommitted changes
        are reported as well, since applying would overwrite them. Neither the
        index nor the working tree is modified.
        """
        with self._open(repo_root, "try-apply") as repo:
            touched = set(_split_lines(repo.git.diff("--name-only", f"{candidate_ref}^1", candidate_ref)))
            if not touched:
                return []

            conflicting = touched & _dirty_paths(repo)
            if repo.git.version_info >= MERGE_TREE_BASE_VERSION:
                conflicting.update(_merge_tree_conflicts(repo, repo_root, candidate_ref))
            else:
                conflicting.update(_index_merge_conflicts(repo, repo_root, candidate_ref))
            return sorted(conflicting)

    def list_stashes(self, repo_root: str) -> list[StashEntry]:
        with self._open(repo_root, "list-stashes") as repo:
            output = repo.git.stash("list", "--format=%gd|%s")

        stashes: list[StashEntry] = []
        for line in _split_lines(output):
            ref, _, subject = line.partition("|")
            match = _STASH_SUBJECT.match(subject)
            if match:
                stashes.append(StashEntry(ref=ref, message=match.group(2), branch=match.group(1)))
            else:
                stashes.append(StashEntry(ref=ref, message=subject))
        return stashes

    def fetch_remote(self, repo_root: str) -> None:
        with self._open(repo_root, "fetch") as repo:
            repo.git.fetch("--all", "--prune")

    def get_commit_diff(self, repo_root: str, commit_hash: str) -> str:
        with self._open(repo_root, "show") as repo:
            return repo.git.show("--stat", "--patch", "--format=%B", commit_hash)

    def get_recent_commits(self, repo_root: str, n: int = 10) -> list[CommitDescriptor]:
        """Get recent commit history for style matching."""
        with self._open(repo_root, "log") as repo:
            try:
                repo.head.commit
            except ValueError:
                return []
            return [
                CommitDescriptor(
                    hash=commit.hexsha,
                    short_hash=commit.hexsha[:7],
                    author=commit.author.name or "",
                    date=commit.committed_datetime.isoformat(),
                    message=commit.message.strip().split("\n")[0],
                    parents=[parent.hexsha for parent in commit.parents],
                )
                for commit in repo.iter_commits(max_count=n)
            ]

    def _run_step(self, repo: Repo, repo_root: str, operation: str, env: dict[str, str], *args: str) -> None:
        # A rebase that stops on a conflict exits non-zero; that is a pause, not a failure
        try:
            with repo.git.custom_environment(**env):
                repo.git.rebase(*args)
        except GitCommandError as e:
            if _rebase_in_progress(repo):
                logger.debug("Rebase stopped in %s: %s", repo_root, (e.stderr or "").strip())
                return
            raise _backend_error(e, repo_root, operation) from e

    def _cleanup_if_finished(self, repo: Repo) -> None:
        if not _rebase_in_progress(repo):
            shutil.rmtree(Path(repo.git_dir) / STATE_DIRNAME, ignore_errors=True)


def _rebase_in_progress(repo: Repo) -> bool:
    git_dir = Path(repo.git_dir)
    return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()


def _write_messages(state_dir: Path, instructions: Sequence[RebaseInstruction]) -> dict[str, Path]:
    message_files: dict[str, Path] = {}
    for instruction in instructions:
        if instruction.disposition is not Disposition.REWORD:
            continue
        if not instruction.message:
            raise BackendError(f"Missing message for reword of {instruction.commit_hash}", operation="rebase")
        state_dir.mkdir(parents=True, exist_ok=True)
        path = state_dir / f"{instruction.commit_hash}.msg"
        path.write_text(instruction.message.rstrip("\n") + "\n", encoding="utf-8")
        message_files[instruction.commit_hash] = path
    return message_files


def _dirty_paths(repo: Repo) -> set[str]:
    paths: set[str] = set()
    for line in repo.git.status("--porcelain").splitlines():
        if len(line) < 4:
            continue
        segment = line[3:]
        for path in segment.split(" -> "):
            path = path.strip()
            if len(path) >= 2 and path[0] == path[-1] == '"':
                path = path[1:-1]
            paths.add(path)
    return paths


def _merge_tree_conflicts(repo: Repo, repo_root: str, candidate_ref: str) -> list[str]:
    """Merge the candidate into HEAD in memory with ``git merge-tree``."""
    status, stdout, _ = repo.git.merge_tree(
        "--write-tree",
        "--name-only",
        "--no-messages",
        f"--merge-base={candidate_ref}^1",
        "HEAD",
        candidate_ref,
        with_extended_output=True,
        with_exceptions=False,
    )
    if status == 1:
        # First line is the resulting tree, the rest are conflicted paths
        return _split_lines(stdout)[1:]
    if status != 0:
        raise BackendError(
            f"Trial merge of {candidate_ref} failed",
            command="git merge-tree",
            status=status,
            repo_root=repo_root,
            operation="try-apply",
        )
    return []


def _index_merge_conflicts(repo: Repo, repo_root: str, candidate_ref: str) -> list[str]:
    """Three-way merge into a scratch index for git without ``merge-tree --merge-base``.

    ``read-tree -m -i`` merges trees in the scratch index only; paths it
    leaves unmerged are retried with ``merge-file`` on the three blobs, so
    non-overlapping edits to the same file are not reported. The scratch
    directory is removed on every exit path.
    """
    with tempfile.TemporaryDirectory(prefix="restack-trial-") as scratch:
        with repo.git.custom_environment(GIT_INDEX_FILE=str(Path(scratch) / "index")):
            try:
                repo.git.read_tree("HEAD")
                repo.git.read_tree("-m", "-i", "--aggressive", f"{candidate_ref}^1", "HEAD", candidate_ref)
                unmerged = repo.git.ls_files("-u")
            except GitCommandError as e:
                raise _backend_error(e, repo_root, "try-apply") from e

        stages: dict[str, dict[str, str]] = {}
        for line in _split_lines(unmerged):
            info, _, path = line.partition("\t")
            _, sha, stage = info.split()
            stages.setdefault(path, {})[stage] = sha

        conflicting: list[str] = []
        for path, blobs in stages.items():
            if set(blobs) != {"1", "2", "3"} or not _blobs_merge_cleanly(repo, Path(scratch), blobs):
                conflicting.append(path)
        return conflicting


def _blobs_merge_cleanly(repo: Repo, scratch: Path, blobs: dict[str, str]) -> bool:
    files = []
    for stage, name in (("2", "ours"), ("1", "base"), ("3", "theirs")):
        path = scratch / name
        path.write_bytes(repo.git.cat_file("blob", blobs[stage], stdout_as_string=False, strip_newline_in_stdout=False))
        files.append(str(path))
    status, _, _ = repo.git.merge_file("-p", "-q", *files, with_extended_output=True, with_exceptions=False)
    return status == 0


def _split_lines(output: str) -> list[str]:
    return [line for line in output.splitlines() if line.strip()]


def _backend_error(error: GitCommandError, repo_root: str, operation: str) -> BackendError:
    stderr = error.stderr.strip() if isinstance(error.stderr, str) else ""
    detail = stderr or str(error)
    command = " ".join(str(part) for part in error.command) if isinstance(error.command, list) else str(error.command)
    return BackendError(detail, command=command, status=error.status, repo_root=repo_root, operation=operation)
