"""Planner wrapper: ask the navigator agent for the next implementation plan.

The navigator runs read-only with its own directory as cwd and the code
directory added for reading. Git history is the only state it is given
about earlier iterations.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Generator

from autonav.events import AgentEvent, ErrorEvent, ResultEvent, TextEvent, ToolUseEvent
from autonav.harness import (
    PERMISSION_READ_ONLY, AgentConfig, Harness, HarnessTimeout, bounded_events, tool_basename,
)
from autonav.plan import (
    SUBMIT_PLAN_TOOL, AgentOptions, ImplementationPlan, LoopContext,
    parse_plan_text, plan_from_dict, plan_tool_schema,
)
from autonav.prompts import build_nav_plan_prompt, build_nav_system_prompt
from autonav.ratelimit import is_rate_limit_message

NAV_DISALLOWED_TOOLS = ("Write", "Edit", "MultiEdit", "NotebookEdit", "Bash")
GIT_LOG_COUNT = 20


class PlannerExecutionError(Exception):
    """Raised when the navigator's harness run fails before yielding a plan."""

    def __init__(
        self,
        message: str,
        partial_text: str = "",
        detail: str | None = None,
        rate_limit: bool = False,
    ):
        super().__init__(message)
        self.partial_text = partial_text
        self.detail = detail
        self.rate_limit = rate_limit


@dataclass
class PlannerOutcome:
    plan: ImplementationPlan
    tokens_used: int = 0
    last_tool: str | None = None
    duration_ms: int = 0


def navigator_config(
    context: LoopContext, nav_system_prompt: str, options: AgentOptions,
) -> AgentConfig:
    return AgentConfig(
        model=options.model,
        system_prompt=build_nav_system_prompt(nav_system_prompt),
        cwd=context.nav_directory,
        max_turns=options.max_turns,
        permission_mode=PERMISSION_READ_ONLY,
        additional_directories=(context.code_directory,),
        disallowed_tools=NAV_DISALLOWED_TOOLS,
        tools=(plan_tool_schema(),),
        timeout=options.timeout,
    )


def stream_navigator(
    harness: Harness,
    context: LoopContext,
    nav_system_prompt: str,
    nav_identity: dict | None,
    options: AgentOptions,
    git_log: str = "",
) -> Generator[AgentEvent, None, PlannerOutcome]:
    """Run the navigator, yielding its events; returns the PlannerOutcome.

    Raises PlannerExecutionError on harness failure and PlanParseError
    when the reply is not a well-formed plan.
    """
    config = navigator_config(context, nav_system_prompt, options)
    prompt = build_nav_plan_prompt(
        task=context.task,
        code_directory=context.code_directory,
        iteration=context.iteration,
        max_iterations=context.max_iterations,
        git_log=git_log,
        branch=context.branch,
        promise=context.promise,
        identity=nav_identity,
    )

    start = time.monotonic()
    last_text = ""
    last_error: ErrorEvent | None = None
    result: ResultEvent | None = None
    submitted: dict | None = None
    last_tool: str | None = None

    try:
        for event in bounded_events(harness.run(config, prompt), options.timeout):
            if isinstance(event, TextEvent):
                last_text = event.text
            elif isinstance(event, ToolUseEvent):
                last_tool = event.name
                if tool_basename(event.name) == SUBMIT_PLAN_TOOL:
                    submitted = event.input
            elif isinstance(event, ErrorEvent):
                last_error = event
            elif isinstance(event, ResultEvent):
                if result is None:
                    result = event
            yield event
    except HarnessTimeout as e:
        raise PlannerExecutionError(
            f"Navigator query failed: {e}",
            partial_text=last_text,
            detail=last_error.message if last_error else None,
        )
    except Exception as e:
        raise PlannerExecutionError(
            f"Navigator query failed: {e}",
            partial_text=last_text,
            detail=last_error.message if last_error else None,
            rate_limit=is_rate_limit_message(str(e)),
        )

    detail = last_error.message if last_error else None
    if last_error is not None:
        raise PlannerExecutionError(
            f"Navigator query failed: {last_error.message}",
            partial_text=last_text,
            detail=detail,
            rate_limit=last_error.retryable or is_rate_limit_message(last_error.message),
        )
    if result is None:
        raise PlannerExecutionError(
            "Navigator query failed: no result received",
            partial_text=last_text,
            detail=detail,
        )
    if not result.success:
        reason = "; ".join(result.errors) or result.text or "Unknown error"
        raise PlannerExecutionError(
            f"Navigator query failed: {reason}",
            partial_text=last_text,
            detail=detail,
            rate_limit=is_rate_limit_message(reason),
        )

    if submitted is not None:
        plan = plan_from_dict(submitted)
    else:
        plan = parse_plan_text(result.text or last_text)

    return PlannerOutcome(
        plan=plan,
        tokens_used=result.tokens_used,
        last_tool=last_tool,
        duration_ms=int((time.monotonic() - start) * 1000),
    )


def query_navigator(
    harness: Harness,
    context: LoopContext,
    nav_system_prompt: str,
    nav_identity: dict | None,
    options: AgentOptions,
    git_log: str = "",
) -> PlannerOutcome:
    """Blocking form of stream_navigator: consume all events, return the outcome."""
    stream = stream_navigator(harness, context, nav_system_prompt, nav_identity, options, git_log)
    while True:
        try:
            next(stream)
        except StopIteration as done:
            return done.value
