"""Tests for building and rebuilding plans."""

from fakes import FakeBackend, make_commit
from restack.models import Disposition, RebasePlan, UpToDate
from restack.planner import build_plan, rebuild_plan
from restack.sequence import set_disposition

ROOT = "/work/repo"


def h(n: int) -> str:
    return make_commit(n).hash


class TestBuildPlan:
    """Tests for build_plan."""

    def test_newest_first_all_pick(self):
        backend = FakeBackend()
        plan = build_plan(backend, ROOT, "main", "feature")

        assert isinstance(plan, RebasePlan)
        assert plan.hashes() == [h(3), h(2), h(1)]
        assert plan.original_order == [h(3), h(2), h(1)]
        assert all(entry.disposition is Disposition.PICK for entry in plan.entries)
        assert (plan.repo_root, plan.base_branch, plan.target_branch) == (ROOT, "main", "feature")

    def test_up_to_date(self):
        backend = FakeBackend(commits={"main": []})
        result = build_plan(backend, ROOT, "main", "feature")

        assert isinstance(result, UpToDate)
        assert result.base_branch == "main"
        assert result.target_branch == "feature"


class TestRebuildPlan:
    """Tests for rebuild_plan."""

    def test_keeps_edits_for_surviving_commits(self):
        backend = FakeBackend(
            commits={
                "main": [make_commit(1), make_commit(2), make_commit(3)],
                "develop": [make_commit(2), make_commit(3), make_commit(4)],
            }
        )
        plan = build_plan(backend, ROOT, "main", "feature")
        set_disposition(plan, h(3), Disposition.REWORD, "Reworded three")
        set_disposition(plan, h(1), Disposition.DROP)

        rebuilt = rebuild_plan(backend, plan, "develop")

        assert isinstance(rebuilt, RebasePlan)
        assert rebuilt.base_branch == "develop"
        assert rebuilt.hashes() == [h(4), h(3), h(2)]
        by_hash = {entry.hash: entry for entry in rebuilt.entries}
        assert by_hash[h(3)].disposition is Disposition.REWORD
        assert by_hash[h(3)].message == "Reworded three"
        assert by_hash[h(4)].disposition is Disposition.PICK

    def test_squash_on_new_oldest_becomes_pick(self):
        backend = FakeBackend(
            commits={
                "main": [make_commit(1), make_commit(2), make_commit(3)],
                "develop": [make_commit(2), make_commit(3)],
            }
        )
        plan = build_plan(backend, ROOT, "main", "feature")
        set_disposition(plan, h(2), Disposition.SQUASH)
        set_disposition(plan, h(3), Disposition.FIXUP)

        rebuilt = rebuild_plan(backend, plan, "develop")

        assert [entry.disposition for entry in rebuilt.entries] == [Disposition.FIXUP, Disposition.PICK]

    def test_up_to_date_against_new_base(self):
        backend = FakeBackend(commits={"main": [make_commit(1)], "develop": []})
        plan = build_plan(backend, ROOT, "main", "feature")

        assert isinstance(rebuild_plan(backend, plan, "develop"), UpToDate)
