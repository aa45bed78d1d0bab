"""Editing operations on a rebase plan.

Plans are kept in display order (newest first), so the last entry is the
oldest commit and the first one replayed. Every operation validates before
it mutates: a rejected edit leaves the plan exactly as it was.
"""

from __future__ import annotations

from restack.errors import IncompletePlan, InvalidTransition
from restack.models import Disposition, RebaseInstruction, RebasePlan, RebasePlanEntry


def find_entry_index(plan: RebasePlan, commit_hash: str) -> int:
    """Locate an entry by full hash or by an unambiguous hash prefix."""
    for index, entry in enumerate(plan.entries):
        if entry.hash == commit_hash:
            return index

    matches = [i for i, entry in enumerate(plan.entries) if commit_hash and entry.hash.startswith(commit_hash)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise InvalidTransition(f"Commit {commit_hash} is not part of the plan", commit_hash=commit_hash)
    raise InvalidTransition(f"Commit prefix {commit_hash} is ambiguous", commit_hash=commit_hash)


def set_disposition(
    plan: RebasePlan,
    commit_hash: str,
    disposition: Disposition | str,
    message: str | None = None,
) -> RebasePlan:
    """Assign a disposition to one commit.

    Squash and fixup are refused on the oldest commit, which has nothing to
    merge into. A message may accompany any disposition; it is only used
    when the disposition is reword.
    """
    disposition = _parse_disposition(disposition, commit_hash)
    index = find_entry_index(plan, commit_hash)
    entry = plan.entries[index]

    if disposition.merges_into_previous and index == len(plan.entries) - 1:
        raise InvalidTransition(
            f"Cannot {disposition.value} {entry.commit.short_hash}: no earlier commit to merge into",
            commit_hash=entry.hash,
            disposition=disposition.value,
        )
    if message is not None:
        _check_message(message, entry)

    entry.disposition = disposition
    if message is not None:
        entry.message = message
    return plan


def set_message(plan: RebasePlan, commit_hash: str, message: str) -> RebasePlan:
    """Store the replacement message for a commit."""
    entry = plan.entries[find_entry_index(plan, commit_hash)]
    _check_message(message, entry)
    entry.message = message
    return plan


def reset_all(plan: RebasePlan) -> RebasePlan:
    """Put every commit back to pick, its original message and position."""
    by_hash = {entry.hash: entry for entry in plan.entries}
    plan.entries = [RebasePlanEntry(commit=by_hash[h].commit) for h in plan.original_order if h in by_hash]
    return plan


def move_entry(plan: RebasePlan, commit_hash: str, offset: int) -> RebasePlan:
    """Swap a commit with its neighbour in display order.

    A negative offset moves the commit up (towards newer commits). Moves past
    either end are ignored.
    """
    index = find_entry_index(plan, commit_hash)
    target = index + offset
    if offset == 0 or target < 0 or target >= len(plan.entries):
        return plan

    entries = list(plan.entries)
    entries[index], entries[target] = entries[target], entries[index]
    oldest = entries[-1]
    if oldest.disposition.merges_into_previous:
        raise InvalidTransition(
            f"Cannot move {oldest.commit.short_hash} to the oldest position while it is a {oldest.disposition.value}",
            commit_hash=oldest.hash,
            disposition=oldest.disposition.value,
        )
    plan.entries = entries
    return plan


def move_up(plan: RebasePlan, commit_hash: str) -> RebasePlan:
    return move_entry(plan, commit_hash, -1)


def move_down(plan: RebasePlan, commit_hash: str) -> RebasePlan:
    return move_entry(plan, commit_hash, 1)


def has_changes(plan: RebasePlan) -> bool:
    """Whether the plan differs from a plain replay of the original commits."""
    if plan.hashes() != plan.original_order:
        return True
    return any(
        entry.disposition is not Disposition.PICK or entry.message is not None
        for entry in plan.entries
    )


def validate_for_execution(plan: RebasePlan) -> None:
    """Raise if the plan cannot be handed to the backend as it stands."""
    if not plan.entries:
        raise IncompletePlan("The plan has no commits")

    missing = [
        entry.hash
        for entry in plan.entries
        if entry.disposition is Disposition.REWORD and not (entry.message and entry.message.strip())
    ]
    if missing:
        raise IncompletePlan(
            f"{len(missing)} reword entr{'y has' if len(missing) == 1 else 'ies have'} no message",
            commit_hashes=missing,
        )

    for entry in plan.execution_order():
        if entry.disposition is Disposition.DROP:
            continue
        if entry.disposition.merges_into_previous:
            raise InvalidTransition(
                f"Cannot {entry.disposition.value} {entry.commit.short_hash}: every earlier commit is dropped",
                commit_hash=entry.hash,
                disposition=entry.disposition.value,
            )
        break


def to_instructions(plan: RebasePlan) -> list[RebaseInstruction]:
    """Translate the plan into backend instructions, oldest commit first."""
    return [
        RebaseInstruction(
            commit_hash=entry.hash,
            disposition=entry.disposition,
            message=entry.message if entry.disposition is Disposition.REWORD else None,
        )
        for entry in plan.execution_order()
    ]


def _parse_disposition(value: Disposition | str, commit_hash: str) -> Disposition:
    if isinstance(value, Disposition):
        return value
    try:
        return Disposition(value.lower())
    except ValueError:
        raise InvalidTransition(
            f"Unknown disposition {value!r}", commit_hash=commit_hash, disposition=value
        ) from None


def _check_message(message: str, entry: RebasePlanEntry) -> None:
    if not message.strip():
        raise InvalidTransition(
            f"Message for {entry.commit.short_hash} cannot be empty",
            commit_hash=entry.hash,
            disposition=Disposition.REWORD.value,
        )
