"""Review and commit-message agents that run between implementing and committing.

Both are single-turn, tool-less runs. The reviewer is the navigator model
looking at the staged diff; it answers "LGTM" or a bullet list of issues,
which the fixer (see implementer.stream_fixer) then works through. The
commit-message agent turns the staged diff into a one-line conventional
commit message.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Generator

from autonav.events import AgentEvent, ErrorEvent, ResultEvent, TextEvent
from autonav.harness import PERMISSION_READ_ONLY, AgentConfig, Harness, bounded_events
from autonav.plan import AgentOptions
from autonav.prompts import (
    COMMIT_SYSTEM_PROMPT, REVIEW_SYSTEM_PROMPT, build_commit_message_prompt, build_review_prompt,
)

MAX_REVIEW_ROUNDS = 5
FALLBACK_COMMIT_MESSAGE = "chore: commit uncommitted changes"

# Claude Code built-ins plus the HTTP harness file tools
NO_TOOLS = (
    "Read", "Glob", "Grep", "LS", "Write", "Edit", "MultiEdit", "NotebookEdit", "Bash",
    "WebFetch", "WebSearch", "Task",
    "file_read", "file_list", "file_write", "file_edit", "run_command",
)


class AgentReplyError(Exception):
    """Raised when a single-turn agent run fails or returns nothing."""
    pass


@dataclass
class ReviewVerdict:
    lgtm: bool
    text: str
    issues: list[str]
    duration_ms: int = 0


@dataclass
class ReviewRecord:
    """One finished review round, fed back into later review and fix prompts."""
    round: int
    issues: str
    fix_summary: str | None = None


def parse_review(text: str) -> ReviewVerdict:
    """LGTM (any case, leading) or the "- " bullet lines of the reply."""
    reply = text.strip()
    if reply.upper().startswith("LGTM"):
        return ReviewVerdict(lgtm=True, text=reply, issues=[])
    issues = [line.strip() for line in reply.splitlines() if line.strip().startswith("- ")]
    return ReviewVerdict(lgtm=False, text=reply, issues=issues)


def clean_commit_message(text: str) -> str:
    """First line of the reply with surrounding quotes removed."""
    lines = text.strip().splitlines()
    first = lines[0].strip() if lines else ""
    if first[:1] in ("'", '"'):
        first = first[1:]
    if first[-1:] in ("'", '"'):
        first = first[:-1]
    return first.strip() or FALLBACK_COMMIT_MESSAGE


def _single_turn_config(model: str, system_prompt: str, cwd: str, timeout: float | None) -> AgentConfig:
    return AgentConfig(
        model=model,
        system_prompt=system_prompt,
        cwd=cwd,
        max_turns=1,
        permission_mode=PERMISSION_READ_ONLY,
        disallowed_tools=NO_TOOLS,
        timeout=timeout,
    )


def _reply_text(
    harness: Harness, config: AgentConfig, prompt: str,
) -> Generator[AgentEvent, None, str]:
    """Run one tool-less turn and return the concatenated reply text."""
    parts: list[str] = []
    result: ResultEvent | None = None
    error: ErrorEvent | None = None
    try:
        for event in bounded_events(harness.run(config, prompt), config.timeout):
            if isinstance(event, TextEvent):
                parts.append(event.text)
            elif isinstance(event, ErrorEvent):
                error = event
            elif isinstance(event, ResultEvent) and result is None:
                result = event
            yield event
    except Exception as e:
        raise AgentReplyError(str(e) or type(e).__name__)

    if error is not None:
        raise AgentReplyError(error.message)
    if result is not None and not result.success:
        raise AgentReplyError("; ".join(result.errors) or result.text or "Unknown error")
    text = "".join(parts) or (result.text if result else "")
    if not text.strip():
        raise AgentReplyError("No reply received")
    return text


def stream_review(
    harness: Harness,
    nav_directory: str,
    diff: str,
    options: AgentOptions,
    history: list[ReviewRecord] | tuple = (),
) -> Generator[AgentEvent, None, ReviewVerdict]:
    """Ask the navigator model to review `diff`. Raises AgentReplyError."""
    config = _single_turn_config(options.model, REVIEW_SYSTEM_PROMPT, nav_directory, options.timeout)
    start = time.monotonic()
    text = yield from _reply_text(harness, config, build_review_prompt(diff, history))
    verdict = parse_review(text)
    verdict.duration_ms = int((time.monotonic() - start) * 1000)
    return verdict


def stream_commit_message(
    harness: Harness,
    code_directory: str,
    diff: str,
    options: AgentOptions,
) -> Generator[AgentEvent, None, str]:
    """Generate a commit message for `diff`. Never raises; falls back to a
    generic message when there is no diff or the agent fails."""
    if not diff.strip():
        return FALLBACK_COMMIT_MESSAGE
    config = _single_turn_config(options.model, COMMIT_SYSTEM_PROMPT, code_directory, options.timeout)
    try:
        text = yield from _reply_text(harness, config, build_commit_message_prompt(diff))
    except AgentReplyError:
        return FALLBACK_COMMIT_MESSAGE
    return clean_commit_message(text)
