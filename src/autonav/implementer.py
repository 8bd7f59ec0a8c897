from __future__ import annotations

import time
from typing import Generator, Iterable

from autonav.events import AgentEvent, ResultEvent, TextEvent, ToolUseEvent
from autonav.harness import PERMISSION_FULL, AgentConfig, Harness, bounded_events, tool_basename
from autonav.plan import AgentOptions, ImplementationPlan, ImplementerResult, LoopContext
from autonav.prompts import (
    build_fixer_prompt, build_fixer_system_prompt, build_implementer_prompt,
    build_implementer_system_prompt,
)

DEFAULT_SUMMARY = "Implementation completed"
NO_RESULT_ERROR = "No result message received"
UNKNOWN_ERROR = "Unknown error"

_PATH_KEYS = ("file_path", "path", "notebook_path")


class ImplementerExecutionError(Exception):
    """Raised while consuming the implementer's event stream; turned into a
    failed ImplementerResult at the wrapper boundary."""
    pass


class _StreamState:
    """Accumulates what the implementer wrapper needs from an event stream."""

    def __init__(self, write_tools: Iterable[str]):
        self.write_tools = frozenset(write_tools)
        self.files_modified: list[str] = []
        self.last_text = ""
        self.last_tool: str | None = None
        self.result: ResultEvent | None = None

    def observe(self, event: AgentEvent) -> None:
        if isinstance(event, TextEvent):
            self.last_text = event.text
        elif isinstance(event, ToolUseEvent):
            self.last_tool = event.name
            if tool_basename(event.name) in self.write_tools:
                path = next((event.input[k] for k in _PATH_KEYS if event.input.get(k)), None)
                if isinstance(path, str) and path not in self.files_modified:
                    self.files_modified.append(path)
        elif isinstance(event, ResultEvent):
            # First terminal result wins
            if self.result is None:
                self.result = event

    def check(self) -> ResultEvent:
        if self.result is None:
            raise ImplementerExecutionError(NO_RESULT_ERROR)
        if not self.result.success:
            errors = [e for e in self.result.errors if e]
            raise ImplementerExecutionError("; ".join(errors) or self.result.text or UNKNOWN_ERROR)
        return self.result


def implementer_config(context: LoopContext, options: AgentOptions) -> AgentConfig:
    return AgentConfig(
        model=options.model,
        system_prompt=build_implementer_system_prompt(context.code_directory),
        cwd=context.code_directory,
        max_turns=options.max_turns,
        permission_mode=PERMISSION_FULL,
        timeout=options.timeout,
    )


def _stream_writer(
    harness: Harness, config: AgentConfig, prompt: str,
) -> Generator[AgentEvent, None, ImplementerResult]:
    """Run a full-permission agent, tracking the files it writes.

    Never raises: every failure comes back as ImplementerResult(success=False).
    """
    state = _StreamState(harness.write_tools)
    start = time.monotonic()

    def _elapsed() -> int:
        return int((time.monotonic() - start) * 1000)

    try:
        for event in bounded_events(harness.run(config, prompt), config.timeout):
            state.observe(event)
            yield event
        result = state.check()
    except Exception as e:
        return ImplementerResult(
            success=False,
            summary=state.last_text,
            files_modified=list(state.files_modified),
            errors=[str(e) or type(e).__name__],
            duration_ms=_elapsed(),
            tokens_used=state.result.tokens_used if state.result else 0,
            last_tool=state.last_tool,
        )

    return ImplementerResult(
        success=True,
        summary=result.text or state.last_text or DEFAULT_SUMMARY,
        files_modified=list(state.files_modified),
        duration_ms=_elapsed(),
        tokens_used=result.tokens_used,
        last_tool=state.last_tool,
    )


def stream_implementer(
    harness: Harness,
    context: LoopContext,
    plan: ImplementationPlan,
    options: AgentOptions,
) -> Generator[AgentEvent, None, ImplementerResult]:
    """Run the implementer on one plan, yielding its events."""
    config = implementer_config(context, options)
    prompt = build_implementer_prompt(context.code_directory, plan)
    return (yield from _stream_writer(harness, config, prompt))


def stream_fixer(
    harness: Harness,
    context: LoopContext,
    review: str,
    options: AgentOptions,
    history=(),
) -> Generator[AgentEvent, None, ImplementerResult]:
    """Run the fixer on the issues from one review round."""
    config = AgentConfig(
        model=options.model,
        system_prompt=build_fixer_system_prompt(context.code_directory),
        cwd=context.code_directory,
        max_turns=options.max_turns,
        permission_mode=PERMISSION_FULL,
        timeout=options.timeout,
    )
    prompt = build_fixer_prompt(context.code_directory, review, history)
    return (yield from _stream_writer(harness, config, prompt))


def run_implementer(
    harness: Harness,
    context: LoopContext,
    plan: ImplementationPlan,
    options: AgentOptions,
) -> ImplementerResult:
    """Blocking form of stream_implementer."""
    stream = stream_implementer(harness, context, plan, options)
    while True:
        try:
            next(stream)
        except StopIteration as done:
            return done.value
