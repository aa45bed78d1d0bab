"""CLI commands for restack."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from restack.config import Config, load_config
from restack.engine import RebaseEngine
from restack.errors import NoActivePlan, NoCommitsToPlan, RestackError
from restack.git_ops import GitBackend, resolve_repo_root
from restack.log_setup import setup_logging
from restack.models import Disposition, ExecutionOutcome, RebasePlan, RebaseState, RebaseStatus
from restack.probe import ConflictProbe

app = typer.Typer(
    name="restack",
    help="Plan and run interactive rebases - pick, reword, squash, fixup, drop or edit your commits",
    no_args_is_help=True,
)
console = Console()
logger = logging.getLogger(__name__)

# Plan cache file name (stored in the git dir, so it never dirties the working tree)
CACHE_FILENAME = "restack_plan.json"

T = TypeVar("T")

ACTION_BADGES = {
    Disposition.PICK: ("✓", "green"),
    Disposition.REWORD: ("✎", "yellow"),
    Disposition.EDIT: ("✋", "yellow"),
    Disposition.SQUASH: ("⬆", "magenta"),
    Disposition.FIXUP: ("⬆", "blue"),
    Disposition.DROP: ("✗", "red"),
}


class _Context:
    """Per-invocation objects shared by the commands."""

    def __init__(self, repo: Path, config: Config) -> None:
        self.repo = repo
        self.config = config
        self.backend = GitBackend()
        self.engine = RebaseEngine(self.backend, default_base=config.base_branch)
        self._root: str | None = None

    @property
    def root(self) -> str:
        if self._root is None:
            try:
                self._root = resolve_repo_root(self.repo)
            except RestackError as e:
                _print_error(str(e))
        return self._root

    @property
    def cache_path(self) -> Path:
        try:
            return self.backend.get_git_dir(self.root) / CACHE_FILENAME
        except RestackError as e:
            _print_error(str(e))


def _load_cached_plan(cache_path: Path) -> RebasePlan | None:
    """Load the saved plan from disk."""
    if not cache_path.exists():
        return None
    try:
        with open(cache_path, "r") as f:
            return RebasePlan.model_validate(json.load(f))
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable plan cache %s: %s", cache_path, e)
        return None


def _save_state(cache_path: Path, state: RebaseState) -> None:
    """Save the plan while it is being edited, drop it otherwise."""
    if state.status is RebaseStatus.PLANNING and state.plan is not None:
        with open(cache_path, "w") as f:
            json.dump(state.plan.model_dump(mode="json"), f, indent=2)
    elif state.status is not RebaseStatus.EXECUTING and not state.status.is_paused:
        _clear_cache(cache_path)


def _clear_cache(cache_path: Path) -> None:
    """Clear the cache file."""
    cache_path.unlink(missing_ok=True)


async def _restore(ctx: _Context) -> RebaseState:
    """Reconcile with the repository and reload the saved plan if idle."""
    state = await ctx.engine.get_state(ctx.root)
    plan = _load_cached_plan(ctx.cache_path)
    if state.status is RebaseStatus.IDLE and plan is not None:
        state = await ctx.engine.adopt_plan(plan.model_copy(update={"repo_root": ctx.root}))
    return state


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except NoCommitsToPlan as e:
        console.print(f"[yellow]No commits to rebase. {e.target_branch} is up to date with {e.base_branch}.[/yellow]")
        raise typer.Exit(0)
    except RestackError as e:
        _print_error(str(e))


def _print_error(message: str) -> None:
    """Print an error message and exit."""
    console.print(f"[red]✗[/red] {message}")
    raise typer.Exit(1)


def _print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def _state_to_dict(state: RebaseState) -> dict[str, Any]:
    data = state.model_dump(mode="json")
    data["conflict_message"] = state.conflict_message
    return data


def _print_state(state: RebaseState, json_output: bool = False) -> None:
    if json_output:
        print(json.dumps(_state_to_dict(state), indent=2))
        return

    if state.is_in_progress:
        title = "⚠️  Rebase in Progress"
        console.print(Panel.fit(
            f"[bold]{title}[/bold]\n{state.conflict_message or 'Paused for editing'}",
            border_style="red" if state.has_conflicts else "blue",
        ))
        for path in state.conflict_files:
            console.print(f"  [red]✗[/red] {path}")
        return

    plan = state.plan
    if plan is None:
        console.print("[dim]No rebase plan. Run 'restack plan' to start one.[/dim]")
        return

    count = len(plan.entries)
    table = Table(title=f"🔀 {plan.target_branch} based on {plan.base_branch} ({count} commit{'s' if count != 1 else ''} ahead)")
    table.add_column("Action", width=10)
    table.add_column("Commit", style="cyan", width=9)
    table.add_column("Message", style="white")
    table.add_column("Author", style="dim")
    table.add_column("Files", justify="right", style="dim")

    for entry in plan.entries:
        badge, color = ACTION_BADGES[entry.disposition]
        message = entry.effective_message
        if entry.disposition is Disposition.REWORD and not entry.message:
            message = f"{message} [red](needs message)[/red]"
        elif entry.disposition is Disposition.DROP:
            message = f"[strike]{message}[/strike]"
        commit = entry.commit
        table.add_row(
            f"[{color}]{badge} {entry.disposition.value}[/{color}]",
            commit.short_hash,
            message,
            commit.author,
            f"{commit.file_count} (+{commit.additions} -{commit.deletions})",
        )

    console.print(table)
    console.print("[dim]Newest first. Use 'restack set <hash> <action>' to edit and 'restack execute' to apply.[/dim]")


def _print_outcome(outcome: ExecutionOutcome, json_output: bool = False) -> None:
    if json_output:
        print(json.dumps(outcome.model_dump(mode="json"), indent=2))
        return

    if outcome.status is RebaseStatus.COMPLETED:
        _print_success("Rebase completed successfully!")
    elif outcome.status is RebaseStatus.PAUSED_CONFLICT:
        count = len(outcome.conflict_files)
        console.print(f"[yellow]⚠ Rebase paused: {count} file(s) have conflicts.[/yellow]")
        for path in outcome.conflict_files:
            console.print(f"  [red]✗[/red] {path}")
        console.print("[dim]Resolve them, stage the files, then run 'restack continue' (or 'restack abort').[/dim]")
    elif outcome.status is RebaseStatus.PAUSED_EDIT:
        console.print("[blue]⏸ Rebase paused for editing.[/blue]")
        console.print("[dim]Amend the commit, then run 'restack continue' (or 'restack abort').[/dim]")
    elif outcome.status is RebaseStatus.ABORTED:
        _print_success("Rebase aborted")


def _obj(ctx: typer.Context) -> _Context:
    return ctx.obj


@app.callback()
def main_callback(
    ctx: typer.Context,
    repo: Path = typer.Option(Path("."), "--repo", "-C", help="Path inside the repository"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Plan and run interactive rebases."""
    config = load_config()
    setup_logging(verbose or config.verbose, config.log_file)
    ctx.obj = _Context(repo, config)


@app.command()
def plan(
    ctx: typer.Context,
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base branch (default: detected main/master)"),
    fetch: bool = typer.Option(False, "--fetch", "-f", help="Fetch from remotes before planning"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Start a rebase plan for the current branch."""
    c = _obj(ctx)

    async def _go() -> RebaseState:
        if fetch:
            return await c.engine.fetch_and_plan(c.root, base)
        return await c.engine.start_planning(c.root, base)

    try:
        state = _run(_go())
    except typer.Exit as e:
        if e.exit_code == 0:
            _clear_cache(c.cache_path)
        raise
    _save_state(c.cache_path, state)
    _print_state(state, json_output)


@app.command()
def show(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show the current plan or the state of a running rebase."""
    c = _obj(ctx)
    state = _run(_restore(c))
    _save_state(c.cache_path, state)
    _print_state(state, json_output)


@app.command("set")
def set_action(
    ctx: typer.Context,
    commit: str = typer.Argument(..., help="Commit hash or unambiguous prefix"),
    action: Disposition = typer.Argument(..., help="pick, reword, squash, fixup, drop or edit"),
    message: Optional[str] = typer.Option(None, "--message", "-m", help="New message (for reword)"),
) -> None:
    """Change what happens to a commit."""
    c = _obj(ctx)

    async def _go() -> RebaseState:
        await _restore(c)
        return await c.engine.set_disposition(c.root, commit, action, message)

    state = _run(_go())
    _save_state(c.cache_path, state)
    _print_state(state)


@app.command()
def reword(
    ctx: typer.Context,
    commit: str = typer.Argument(..., help="Commit hash or unambiguous prefix"),
    message: str = typer.Argument(..., help="New commit message"),
) -> None:
    """Reword a commit."""
    c = _obj(ctx)

    async def _go() -> RebaseState:
        await _restore(c)
        return await c.engine.set_disposition(c.root, commit, Disposition.REWORD, message)

    state = _run(_go())
    _save_state(c.cache_path, state)
    _print_success("Commit message updated. Run 'restack execute' to apply.")


@app.command()
def move(
    ctx: typer.Context,
    commit: str = typer.Argument(..., help="Commit hash or unambiguous prefix"),
    direction: str = typer.Argument(..., help="up (newer) or down (older)"),
) -> None:
    """Move a commit up or down in the plan."""
    if direction not in ("up", "down"):
        _print_error("Direction must be 'up' or 'down'")
    c = _obj(ctx)

    async def _go() -> RebaseState:
        await _restore(c)
        return await c.engine.move(c.root, commit, -1 if direction == "up" else 1)

    state = _run(_go())
    _save_state(c.cache_path, state)
    _print_state(state)


@app.command()
def execute(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Execute the plan."""
    c = _obj(ctx)
    state = _run(_restore(c))
    if state.plan is None or state.status is not RebaseStatus.PLANNING:
        _print_error("No rebase to execute. Run 'restack plan' first.")
    if not yes:
        typer.confirm(
            f"Execute rebase of {len(state.plan.entries)} commit(s) based on {state.plan.base_branch}?",
            abort=True,
        )

    async def _go() -> ExecutionOutcome:
        await c.engine.adopt_plan(state.plan)
        return await c.engine.execute(c.root)

    outcome = _run(_go())
    if not outcome.status.is_paused:
        _clear_cache(c.cache_path)
    _print_outcome(outcome, json_output)


@app.command("continue")
def continue_rebase(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Continue the rebase after resolving conflicts or editing."""
    c = _obj(ctx)

    async def _go() -> ExecutionOutcome:
        await c.engine.get_state(c.root)
        return await c.engine.continue_execution(c.root)

    outcome = _run(_go())
    if not outcome.status.is_paused:
        _clear_cache(c.cache_path)
    _print_outcome(outcome, json_output)


@app.command()
def abort(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Abort the rebase (or discard the plan)."""
    if not yes:
        typer.confirm("Are you sure you want to abort the rebase? All changes will be lost.", abort=True)
    c = _obj(ctx)

    async def _go() -> ExecutionOutcome:
        await _restore(c)
        return await c.engine.abort_execution(c.root)

    outcome = _run(_go())
    _clear_cache(c.cache_path)
    _print_outcome(outcome)


@app.command()
def reset(ctx: typer.Context) -> None:
    """Reset every commit back to pick and start over."""
    c = _obj(ctx)

    async def _go() -> RebaseState:
        await _restore(c)
        # A paused rebase keeps its plan only in the cache
        cached = _load_cached_plan(c.cache_path)
        if cached is None:
            return await c.engine.reset(c.root)
        return await c.engine.reset(c.root, cached.base_branch, cached.target_branch)

    state = _run(_go())
    _save_state(c.cache_path, state)
    _print_success("Rebase configuration reset. All commits set to pick.")


@app.command()
def base(
    ctx: typer.Context,
    branch: str = typer.Argument(..., help="New base branch"),
) -> None:
    """Change the base branch, keeping edits to commits that remain."""
    c = _obj(ctx)

    async def _go() -> RebaseState:
        await _restore(c)
        return await c.engine.change_base(c.root, branch)

    state = _run(_go())
    _save_state(c.cache_path, state)
    _print_state(state)


@app.command()
def branches(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List branches the current branch can be rebased onto."""
    c = _obj(ctx)
    candidates = _run(c.engine.base_candidates(c.root))

    if json_output:
        print(json.dumps([b.model_dump() for b in candidates], indent=2))
        return

    table = Table(title=f"🌿 Base candidates ({len(candidates)})")
    table.add_column("Branch", style="cyan")
    table.add_column("Kind", width=8)
    table.add_column("Last commit", style="white")
    for branch in candidates:
        table.add_row(branch.name, "remote" if branch.is_remote else "local", branch.last_commit_message)
    console.print(table)


@app.command()
def stashes(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List stashes and flag the ones that would conflict."""
    c = _obj(ctx)
    probe = ConflictProbe(c.backend, concurrency=c.config.probe_concurrency)
    results = _run(probe.probe_stashes(c.root))

    if json_output:
        output = [
            {**stash.model_dump(), "conflicting_paths": result.conflicting_paths}
            for stash, result in results
        ]
        print(json.dumps(output, indent=2))
        return

    if not results:
        console.print("[yellow]No stashes found.[/yellow]")
        return

    table = Table(title=f"📦 Stashes ({len(results)})")
    table.add_column("Ref", style="cyan")
    table.add_column("Branch", style="dim")
    table.add_column("Message", style="white")
    table.add_column("Conflicts")
    for stash, result in results:
        conflicts = f"[red]⚠ {', '.join(result.conflicting_paths)}[/red]" if result.has_conflicts else "[green]none[/green]"
        table.add_row(stash.ref, stash.branch or "", stash.message, conflicts)
    console.print(table)


@app.command()
def suggest(
    ctx: typer.Context,
    commit: str = typer.Argument(..., help="Commit hash or unambiguous prefix"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Override default model"),
    apply: bool = typer.Option(False, "--apply", "-a", help="Reword the commit with the suggestion"),
) -> None:
    """Use AI to suggest a new message for a commit in the plan."""
    c = _obj(ctx)
    if not c.config.api_key:
        _print_error(
            "GOOGLE_API_KEY not set. Please set it in your environment or config file.\n"
            "  export GOOGLE_API_KEY='your-api-key'"
        )

    from restack.agent import suggest_message
    from restack.sequence import find_entry_index

    async def _go() -> tuple[str, RebaseState]:
        state = await _restore(c)
        if state.plan is None:
            raise NoActivePlan("No rebase plan. Run 'restack plan' first.")
        entry = state.plan.entries[find_entry_index(state.plan, commit)]
        with console.status(f"[cyan]Asking {model or c.config.model} about {entry.commit.short_hash}...[/cyan]"):
            suggestion = await suggest_message(
                c.root,
                entry.hash,
                entry.commit.message,
                model=model or c.config.model,
                api_key=c.config.api_key,
                backend=c.backend,
            )
        if apply:
            state = await c.engine.set_disposition(c.root, entry.hash, Disposition.REWORD, suggestion)
        return suggestion, state

    suggestion, state = _run(_go())
    _save_state(c.cache_path, state)
    console.print(f"  [bold]{suggestion}[/bold]")
    if apply:
        _print_success("Commit will be reworded. Run 'restack execute' to apply.")


@app.command()
def clear(ctx: typer.Context) -> None:
    """Clear the saved plan."""
    _clear_cache(_obj(ctx).cache_path)
    _print_success("Saved plan cleared")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
