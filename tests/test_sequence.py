"""Unit tests for plan editing operations."""

import pytest

from fakes import make_commit
from restack import sequence
from restack.errors import IncompletePlan, InvalidTransition
from restack.models import Disposition, RebasePlan, RebasePlanEntry


def make_plan(count: int = 3) -> RebasePlan:
    """Plan with commits c1..c<count>, newest first."""
    commits = [make_commit(n) for n in range(1, count + 1)]
    return RebasePlan(
        repo_root="/work/repo",
        base_branch="main",
        target_branch="feature",
        entries=[RebasePlanEntry(commit=c) for c in reversed(commits)],
    )


def h(n: int) -> str:
    return make_commit(n).hash


class TestFindEntry:
    """Tests for find_entry_index."""

    def test_full_hash(self):
        plan = make_plan()
        assert sequence.find_entry_index(plan, h(3)) == 0
        assert sequence.find_entry_index(plan, h(1)) == 2

    def test_unique_prefix(self):
        plan = make_plan()
        assert sequence.find_entry_index(plan, "c2") == 1

    def test_unknown_hash(self):
        with pytest.raises(InvalidTransition, match="not part of the plan"):
            sequence.find_entry_index(make_plan(), "deadbeef")

    def test_ambiguous_prefix(self):
        with pytest.raises(InvalidTransition, match="ambiguous"):
            sequence.find_entry_index(make_plan(), "c")


class TestSetDisposition:
    """Tests for set_disposition."""

    @pytest.mark.parametrize("disposition", [Disposition.SQUASH, Disposition.FIXUP])
    def test_oldest_cannot_merge(self, disposition):
        """The first commit in execution order has nothing to merge into."""
        plan = make_plan()
        before = plan.model_copy(deep=True)

        with pytest.raises(InvalidTransition) as exc_info:
            sequence.set_disposition(plan, h(1), disposition)

        assert exc_info.value.commit_hash == h(1)
        assert exc_info.value.disposition == disposition.value
        assert plan == before

    @pytest.mark.parametrize("disposition", [Disposition.SQUASH, Disposition.FIXUP])
    def test_single_commit_cannot_merge(self, disposition):
        plan = make_plan(1)
        with pytest.raises(InvalidTransition):
            sequence.set_disposition(plan, h(1), disposition)
        assert plan.entries[0].disposition is Disposition.PICK

    @pytest.mark.parametrize("disposition", [Disposition.SQUASH, Disposition.FIXUP])
    def test_newer_commits_can_merge(self, disposition):
        plan = make_plan()
        sequence.set_disposition(plan, h(2), disposition)
        assert plan.entries[1].disposition is disposition

    def test_accepts_string(self):
        plan = make_plan()
        sequence.set_disposition(plan, h(3), "DROP")
        assert plan.entries[0].disposition is Disposition.DROP

    def test_unknown_disposition(self):
        plan = make_plan()
        with pytest.raises(InvalidTransition, match="Unknown disposition"):
            sequence.set_disposition(plan, h(3), "merge")

    def test_reword_with_message(self):
        plan = make_plan()
        sequence.set_disposition(plan, h(2), Disposition.REWORD, "Better message")
        entry = plan.entries[1]
        assert entry.disposition is Disposition.REWORD
        assert entry.effective_message == "Better message"
        # The descriptor keeps the original
        assert entry.commit.message == "Commit 2"

    def test_reword_with_empty_message_rejected(self):
        plan = make_plan()
        with pytest.raises(InvalidTransition, match="cannot be empty"):
            sequence.set_disposition(plan, h(2), Disposition.REWORD, "   ")
        assert plan.entries[1].disposition is Disposition.PICK

    def test_message_before_reword(self):
        """The message may be set before the disposition."""
        plan = make_plan()
        sequence.set_message(plan, h(2), "Set first")
        sequence.set_disposition(plan, h(2), Disposition.REWORD)
        sequence.validate_for_execution(plan)
        assert plan.entries[1].effective_message == "Set first"


class TestResetAll:
    """Tests for reset_all."""

    def test_restores_everything(self):
        plan = make_plan()
        sequence.set_disposition(plan, h(3), Disposition.FIXUP)
        sequence.set_disposition(plan, h(2), Disposition.REWORD, "Changed")
        sequence.move_down(plan, h(3))
        sequence.set_disposition(plan, h(1), Disposition.DROP)

        sequence.reset_all(plan)

        assert plan.hashes() == [h(3), h(2), h(1)]
        for entry in plan.entries:
            assert entry.disposition is Disposition.PICK
            assert entry.message is None
            assert entry.effective_message == entry.commit.message
        assert not sequence.has_changes(plan)


class TestMove:
    """Tests for move_entry."""

    def test_move_up_and_down(self):
        plan = make_plan()
        sequence.move_up(plan, h(2))
        assert plan.hashes() == [h(2), h(3), h(1)]
        sequence.move_down(plan, h(2))
        assert plan.hashes() == [h(3), h(2), h(1)]

    def test_move_past_edge_is_ignored(self):
        plan = make_plan()
        sequence.move_up(plan, h(3))
        sequence.move_down(plan, h(1))
        assert plan.hashes() == [h(3), h(2), h(1)]

    def test_cannot_move_squash_to_oldest(self):
        plan = make_plan()
        sequence.set_disposition(plan, h(2), Disposition.SQUASH)
        with pytest.raises(InvalidTransition, match="oldest position"):
            sequence.move_down(plan, h(2))
        assert plan.hashes() == [h(3), h(2), h(1)]

    def test_move_marks_plan_changed(self):
        plan = make_plan()
        assert not sequence.has_changes(plan)
        sequence.move_up(plan, h(1))
        assert sequence.has_changes(plan)


class TestValidateForExecution:
    """Tests for validate_for_execution."""

    def test_reword_without_message(self):
        plan = make_plan()
        sequence.set_disposition(plan, h(2), Disposition.REWORD)
        with pytest.raises(IncompletePlan) as exc_info:
            sequence.validate_for_execution(plan)
        assert exc_info.value.commit_hashes == [h(2)]

    def test_empty_plan(self):
        plan = make_plan()
        plan.entries = []
        with pytest.raises(IncompletePlan):
            sequence.validate_for_execution(plan)

    def test_squash_after_only_drops(self):
        plan = make_plan()
        sequence.set_disposition(plan, h(2), Disposition.SQUASH)
        sequence.set_disposition(plan, h(1), Disposition.DROP)
        with pytest.raises(InvalidTransition, match="every earlier commit is dropped"):
            sequence.validate_for_execution(plan)

    def test_valid_plan(self):
        plan = make_plan()
        sequence.set_disposition(plan, h(3), Disposition.FIXUP)
        sequence.set_disposition(plan, h(2), Disposition.EDIT)
        sequence.validate_for_execution(plan)


class TestToInstructions:
    """Tests for to_instructions."""

    def test_execution_order_is_reverse_of_display(self):
        plan = make_plan()
        assert plan.hashes() == [h(3), h(2), h(1)]

        instructions = sequence.to_instructions(plan)

        assert [i.commit_hash for i in instructions] == [h(1), h(2), h(3)]

    def test_dispositions_and_messages(self):
        plan = make_plan()
        sequence.set_disposition(plan, h(3), Disposition.SQUASH)
        sequence.set_disposition(plan, h(2), Disposition.REWORD, "Reworded")
        sequence.set_message(plan, h(1), "Ignored unless reworded")

        instructions = sequence.to_instructions(plan)

        assert [(i.disposition, i.message) for i in instructions] == [
            (Disposition.PICK, None),
            (Disposition.REWORD, "Reworded"),
            (Disposition.SQUASH, None),
        ]

    def test_reordered_plan(self):
        plan = make_plan()
        sequence.move_up(plan, h(1))
        assert [i.commit_hash for i in sequence.to_instructions(plan)] == [h(2), h(1), h(3)]
