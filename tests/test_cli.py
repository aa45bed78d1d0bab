"""End-to-end tests for the restack CLI against temporary repositories."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from conftest import commit_file
from restack.cli import CACHE_FILENAME, app

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path_factory, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path_factory.mktemp("xdg")))
    for name in ("GOOGLE_API_KEY", "RESTACK_MODEL", "RESTACK_BASE_BRANCH", "RESTACK_VERBOSE"):
        monkeypatch.delenv(name, raising=False)


def invoke(repo, *args, input=None):
    return runner.invoke(app, ["-C", repo.working_dir, *args], input=input)


def cache_file(repo) -> Path:
    return Path(repo.git_dir) / CACHE_FILENAME


def plan_json(repo):
    result = invoke(repo, "show", "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def subjects_ahead(repo):
    return [c.message.strip() for c in repo.iter_commits("main..feature")]


class TestPlanCommand:
    """Tests for plan and show."""

    def test_plan_saves_cache(self, feature_repo):
        repo, hashes = feature_repo

        result = invoke(repo, "plan", "--json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["status"] == "planning"
        assert [e["commit"]["hash"] for e in data["plan"]["entries"]] == list(reversed(hashes))
        assert cache_file(repo).exists()

    def test_plan_table(self, feature_repo):
        repo, hashes = feature_repo

        result = invoke(repo, "plan")

        assert result.exit_code == 0, result.output
        assert "feature based on main" in result.output
        assert hashes[0][:7] in result.output

    def test_up_to_date(self, feature_repo):
        repo, _ = feature_repo
        repo.git.checkout("main")

        result = invoke(repo, "plan")

        assert result.exit_code == 0
        assert "No commits to rebase" in result.output
        assert not cache_file(repo).exists()

    def test_dirty_tree(self, feature_repo):
        repo, _ = feature_repo
        Path(repo.working_dir, "scratch.txt").write_text("wip\n")

        result = invoke(repo, "plan")

        assert result.exit_code == 1
        assert "uncommitted changes" in result.output

    def test_not_a_repository(self, tmp_path):
        result = runner.invoke(app, ["-C", str(tmp_path), "show"])

        assert result.exit_code == 1
        assert "Not a git repository" in result.output

    def test_show_without_plan(self, feature_repo):
        repo, _ = feature_repo

        result = invoke(repo, "show")

        assert result.exit_code == 0
        assert "No rebase plan" in result.output


class TestEditCommands:
    """Tests for set, reword, move, reset and base."""

    def test_edits_survive_between_invocations(self, feature_repo):
        repo, (a, b, c) = feature_repo
        invoke(repo, "plan")

        assert invoke(repo, "set", c[:8], "drop").exit_code == 0
        assert invoke(repo, "reword", b[:8], "Better b").exit_code == 0

        entries = plan_json(repo)["plan"]["entries"]
        assert [e["disposition"] for e in entries] == ["drop", "reword", "pick"]
        assert entries[1]["message"] == "Better b"

    def test_squash_on_oldest_rejected(self, feature_repo):
        repo, (a, _, _) = feature_repo
        invoke(repo, "plan")

        result = invoke(repo, "set", a[:8], "squash")

        assert result.exit_code == 1
        assert "no earlier commit" in result.output
        assert [e["disposition"] for e in plan_json(repo)["plan"]["entries"]] == ["pick"] * 3

    def test_edit_without_plan(self, feature_repo):
        repo, (a, _, _) = feature_repo

        result = invoke(repo, "set", a[:8], "drop")

        assert result.exit_code == 1
        assert "No rebase plan" in result.output

    def test_move_and_reset(self, feature_repo):
        repo, (a, b, c) = feature_repo
        invoke(repo, "plan")

        assert invoke(repo, "move", a[:8], "up").exit_code == 0
        assert [e["commit"]["hash"] for e in plan_json(repo)["plan"]["entries"]] == [c, a, b]

        assert invoke(repo, "reset").exit_code == 0
        assert [e["commit"]["hash"] for e in plan_json(repo)["plan"]["entries"]] == [c, b, a]

    def test_move_bad_direction(self, feature_repo):
        repo, (a, _, _) = feature_repo

        result = invoke(repo, "move", a[:8], "sideways")

        assert result.exit_code == 1
        assert "'up' or 'down'" in result.output

    def test_change_base(self, feature_repo):
        repo, (a, b, c) = feature_repo
        repo.git.branch("develop", a)
        invoke(repo, "plan")
        invoke(repo, "set", c[:8], "fixup")

        result = invoke(repo, "base", "develop")

        assert result.exit_code == 0, result.output
        data = plan_json(repo)["plan"]
        assert data["base_branch"] == "develop"
        assert [(e["commit"]["hash"], e["disposition"]) for e in data["entries"]] == [(c, "fixup"), (b, "pick")]


class TestExecuteCommands:
    """Tests for execute, continue and abort."""

    def test_execute(self, feature_repo):
        repo, (a, b, c) = feature_repo
        invoke(repo, "plan")
        invoke(repo, "set", c[:8], "drop")
        invoke(repo, "reword", b[:8], "Better b")

        result = invoke(repo, "execute", "--yes")

        assert result.exit_code == 0, result.output
        assert "Rebase completed" in result.output
        assert [m.message.strip() for m in repo.iter_commits("main..feature")] == ["Better b", "Add a"]
        assert not cache_file(repo).exists()

    def test_execute_needs_confirmation(self, feature_repo):
        repo, _ = feature_repo
        invoke(repo, "plan")

        result = invoke(repo, "execute", input="n\n")

        assert result.exit_code == 1
        assert len(list(repo.iter_commits("main..feature"))) == 3

    def test_execute_reword_without_message(self, feature_repo):
        repo, (_, b, _) = feature_repo
        invoke(repo, "plan")
        invoke(repo, "set", b[:8], "reword")

        result = invoke(repo, "execute", "--yes")

        assert result.exit_code == 1
        assert "no message" in result.output
        assert not Path(repo.git_dir, "rebase-merge").exists()

    def test_conflict_continue(self, feature_repo):
        repo, _ = feature_repo
        repo.git.checkout("main")
        commit_file(repo, "a.txt", "main's a\n", "Add a on main")
        repo.git.checkout("feature")
        invoke(repo, "plan")

        result = invoke(repo, "execute", "--yes", "--json")

        assert result.exit_code == 0, result.output
        outcome = json.loads(result.output)
        assert outcome["status"] == "paused-conflict"
        assert outcome["conflict_files"] == ["a.txt"]

        shown = invoke(repo, "show")
        assert "Rebase in Progress" in shown.output
        assert "1 file(s) have conflicts" in shown.output

        Path(repo.working_dir, "a.txt").write_text("resolved\n")
        repo.git.add("a.txt")
        result = invoke(repo, "continue")

        assert result.exit_code == 0, result.output
        assert "Rebase completed" in result.output

    def test_conflict_abort(self, feature_repo):
        repo, (_, _, c) = feature_repo
        repo.git.checkout("main")
        commit_file(repo, "a.txt", "main's a\n", "Add a on main")
        repo.git.checkout("feature")
        invoke(repo, "plan")
        invoke(repo, "execute", "--yes")

        result = invoke(repo, "abort", "--yes")

        assert result.exit_code == 0, result.output
        assert "Rebase aborted" in result.output
        assert repo.head.commit.hexsha == c
        assert not cache_file(repo).exists()

    def test_execute_refuses_stale_plan(self, feature_repo):
        repo, _ = feature_repo
        invoke(repo, "plan")
        commit_file(repo, "d.txt", "d\n", "Add d")

        result = invoke(repo, "execute", "--yes")

        assert result.exit_code == 1
        assert "out of date" in result.output
        assert subjects_ahead(repo) == ["Add d", "Add c", "Add b", "Add a"]
        assert cache_file(repo).exists()

    def test_reset_while_paused_keeps_base(self, feature_repo):
        repo, (a, b, c) = feature_repo
        repo.git.branch("develop", a)
        invoke(repo, "plan", "--base", "develop")
        invoke(repo, "set", b[:8], "edit")
        paused = invoke(repo, "execute", "--yes", "--json")
        assert json.loads(paused.output)["status"] == "paused-edit"

        result = invoke(repo, "reset")

        assert result.exit_code == 0, result.output
        assert not Path(repo.git_dir, "rebase-merge").exists()
        assert repo.head.commit.hexsha == c
        state = plan_json(repo)
        assert state["status"] == "planning"
        assert state["plan"]["base_branch"] == "develop"
        assert [(e["commit"]["hash"], e["disposition"]) for e in state["plan"]["entries"]] == [(c, "pick"), (b, "pick")]

    def test_continue_without_rebase(self, feature_repo):
        repo, _ = feature_repo

        result = invoke(repo, "continue")

        assert result.exit_code == 1
        assert "No rebase in progress" in result.output


class TestOtherCommands:
    """Tests for branches, stashes, suggest and clear."""

    def test_branches(self, feature_repo):
        repo, _ = feature_repo
        repo.git.branch("develop")

        result = invoke(repo, "branches", "--json")

        assert result.exit_code == 0, result.output
        names = [b["name"] for b in json.loads(result.output)]
        assert names[0] == "main"
        assert "feature" not in names
        assert "develop" in names

    def test_stashes(self, feature_repo):
        repo, _ = feature_repo
        Path(repo.working_dir, "a.txt").write_text("stashed\n")
        repo.git.stash("push", "-m", "tweak a")
        commit_file(repo, "a.txt", "committed\n", "Change a")

        result = invoke(repo, "stashes", "--json")

        assert result.exit_code == 0, result.output
        (entry,) = json.loads(result.output)
        assert entry["message"] == "tweak a"
        assert entry["conflicting_paths"] == ["a.txt"]

    def test_no_stashes(self, feature_repo):
        repo, _ = feature_repo

        result = invoke(repo, "stashes")

        assert "No stashes found" in result.output

    def test_suggest_requires_api_key(self, feature_repo):
        repo, (a, _, _) = feature_repo

        result = invoke(repo, "suggest", a[:8])

        assert result.exit_code == 1
        assert "GOOGLE_API_KEY not set" in result.output

    def test_clear(self, feature_repo):
        repo, _ = feature_repo
        invoke(repo, "plan")

        result = invoke(repo, "clear")

        assert result.exit_code == 0
        assert not cache_file(repo).exists()
