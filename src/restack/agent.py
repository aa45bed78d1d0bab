"""ADK agent and helpers for suggesting reworded commit messages."""

from __future__ import annotations

import asyncio
from typing import Any

from google.adk.agents import Agent

from restack.errors import BackendError, RestackError
from restack.git_ops import GitBackend, resolve_repo_root

# Diffs longer than this are truncated before being sent to the model
MAX_DIFF_CHARS = 8000

INSTRUCTION = """<role>
You are an expert software engineer who writes clear, conventional git commit messages.
</role>

<instructions>
1. Read the commit's current message and its diff.
2. Look at the recent history to match the project's commit message conventions.
3. Write ONE replacement subject line describing what the change does.
</instructions>

<constraints>
- Use imperative mood ("Add feature" not "Added feature")
- Keep the subject at 72 characters or less
- Follow the conventional commit format if the history uses it
- Output ONLY the subject line, without quotes or explanation
</constraints>"""


def get_commit_details(commit_hash: str) -> dict[str, Any]:
    """Get the message and diff of a commit.

    Args:
        commit_hash: Full or abbreviated hash of the commit.

    Returns:
        dict: A dictionary with:
            - status: "success" or "error"
            - diff: The commit message, stat and patch (on success)
            - error_message: Error description (on error)
    """
    try:
        diff = GitBackend().get_commit_diff(resolve_repo_root(), commit_hash)
        return {"status": "success", "diff": _truncate(diff)}
    except RestackError as e:
        return {"status": "error", "error_message": str(e)}


def get_git_history(count: int = 10) -> dict[str, Any]:
    """Get recent commit history to understand the project's commit style.

    Args:
        count: Number of recent commits to retrieve (default: 10).

    Returns:
        dict: A dictionary with:
            - status: "success" or "error"
            - commits: List of recent commits with hash, message, author, date (on success)
            - error_message: Error description (on error)
    """
    try:
        commits = GitBackend().get_recent_commits(resolve_repo_root(), count)
        return {
            "status": "success",
            "commits": [
                {"hash": c.short_hash, "message": c.message, "author": c.author, "date": c.date}
                for c in commits
            ],
        }
    except RestackError as e:
        return {"status": "error", "error_message": str(e)}


# The root agent - required export for ADK
root_agent = Agent(
    name="reword_assistant",
    model="gemini-2.0-flash",
    description="Suggests better commit messages for commits being reworded during a rebase",
    instruction=INSTRUCTION,
    tools=[get_commit_details, get_git_history],
)


def build_prompt(current_message: str, diff: str, history: list[str]) -> str:
    history_block = "\n".join(f"- {line}" for line in history) or "(no history)"
    return f"""Suggest a better commit message for this commit.

## Current message
{current_message}

## Recent history
{history_block}

## Diff
```diff
{_truncate(diff)}
```

{INSTRUCTION}"""


async def suggest_message(
    repo_root: str,
    commit_hash: str,
    current_message: str,
    *,
    model: str,
    api_key: str | None = None,
    client: Any = None,
    backend: GitBackend | None = None,
) -> str:
    """Ask the model for a replacement subject line for ``commit_hash``."""
    backend = backend or GitBackend()
    diff = await asyncio.to_thread(backend.get_commit_diff, repo_root, commit_hash)
    recent = await asyncio.to_thread(backend.get_recent_commits, repo_root, 10)
    history = [c.message for c in recent]

    if client is None:
        import google.genai as genai

        client = genai.Client(api_key=api_key)

    response = await client.aio.models.generate_content(
        model=model,
        contents=build_prompt(current_message, diff, history),
    )
    text = (response.text or "").strip()
    # Keep the first non-empty line, stripped of quotes the model may add
    lines = [line.strip().strip("`\"'") for line in text.splitlines() if line.strip()]
    if not lines or not lines[0]:
        raise BackendError(f"Model {model} returned no message", repo_root=repo_root, operation="suggest")
    return lines[0]


def _truncate(diff: str) -> str:
    if len(diff) > MAX_DIFF_CHARS:
        return diff[:MAX_DIFF_CHARS] + "\n... [truncated]"
    return diff
