"""Shared fixtures: temporary git repositories and a fake backend."""

from pathlib import Path

import pytest
from git import Repo

from fakes import FakeBackend
from restack.engine import RebaseEngine

ROOT = "/work/repo"


def commit_file(repo: Repo, path: str, content: str, message: str) -> str:
    """Write a file, commit it and return the new commit hash."""
    full_path = Path(repo.working_dir) / path
    full_path.parent.mkdir(parents=True, exist_ok=True)
    full_path.write_text(content)
    repo.index.add([path])
    return repo.index.commit(message).hexsha


@pytest.fixture
def temp_repo(tmp_path):
    """Create a temporary git repository for testing."""
    repo = Repo.init(tmp_path, initial_branch="main")

    # Configure git user for commits
    repo.config_writer().set_value("user", "name", "Test User").release()
    repo.config_writer().set_value("user", "email", "test@example.com").release()
    repo.config_writer().set_value("commit", "gpgsign", "false").release()

    yield repo
    repo.close()


@pytest.fixture
def repo_with_commit(temp_repo):
    """Create a repo with an initial commit."""
    commit_file(temp_repo, "initial.txt", "initial content\n", "Initial commit")
    return temp_repo


@pytest.fixture
def feature_repo(repo_with_commit):
    """A repo with ``feature`` three commits ahead of ``main``, checked out.

    Returns the repo and the feature commit hashes, oldest first.
    """
    repo = repo_with_commit
    repo.git.checkout("-b", "feature")
    hashes = [
        commit_file(repo, "a.txt", "a\n", "Add a"),
        commit_file(repo, "b.txt", "b\n", "Add b"),
        commit_file(repo, "c.txt", "c\n", "Add c"),
    ]
    return repo, hashes


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def engine(fake_backend):
    return RebaseEngine(fake_backend)
