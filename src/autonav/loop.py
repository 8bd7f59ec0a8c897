"""The memento loop controller.

INIT → PLANNING → IMPLEMENTING → [REVIEWING] → (PLANNING | FINALIZING) → DONE,
with ABORTED reachable from planning or implementing. REVIEWING only runs
when review rounds are enabled. The implementer forgets everything between
iterations; the commits made after each implementer run are what the
navigator sees next time.

iter_memento_loop yields events and never prints; the caller decides how
to show them. Errors are collected into MementoResult.errors rather than
raised.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Generator, Iterator

from autonav.config import (
    DEFAULT_IMPLEMENTER_MODEL, DEFAULT_MAX_TURNS, DEFAULT_NAV_MODEL, DEFAULT_RATE_LIMIT_RETRIES,
    DEFAULT_TASK,
)
from autonav.events import (
    AgentActivity, AgentEvent, FixFinished, ImplementerFinished, IterationCommitted,
    IterationStarted, LoopAborted, LoopFinished, LoopStarted, Notice, PlanReceived,
    PullRequestOpened, RateLimitWait, ReviewRound, ToolUseEvent,
)
from autonav.gitops import FinalizationError, GitError, publish_branch
from autonav.harness import Harness
from autonav.implementer import stream_fixer, stream_implementer
from autonav.navigator import GIT_LOG_COUNT, PlannerExecutionError, PlannerOutcome, stream_navigator
from autonav.plan import AgentOptions, LoopContext, MementoResult, PlanParseError
from autonav.prompts import DEFAULT_PROMISE
from autonav.ratelimit import (
    connection_retry_delay, is_transient_connection_error, parse_rate_limit_error, wait_seconds_for,
)
from autonav.review import (
    MAX_REVIEW_ROUNDS, AgentReplyError, ReviewRecord, stream_commit_message, stream_review,
)

MAX_ERROR_LENGTH = 500
PR_TITLE_LENGTH = 70
DIRTY_COMMIT_MESSAGE = "chore: save uncommitted changes before memento loop"


@dataclass
class MementoOptions:
    """Everything one loop run is configured with."""
    code_directory: str
    nav_directory: str
    nav_system_prompt: str
    task: str = DEFAULT_TASK
    nav_identity: dict | None = None
    max_iterations: int = 0
    promise: str = DEFAULT_PROMISE
    branch: str | None = None
    pr: bool = False
    model: str = DEFAULT_IMPLEMENTER_MODEL
    nav_model: str = DEFAULT_NAV_MODEL
    max_turns: int = DEFAULT_MAX_TURNS
    timeout: float | None = None
    auto_commit: bool = True
    commit_dirty: bool = False
    max_consecutive_failures: int = 0
    rate_limit_retries: int = DEFAULT_RATE_LIMIT_RETRIES
    review_rounds: int = 0              # 0 = no review; capped at MAX_REVIEW_ROUNDS
    generate_commit_message: bool = False


@dataclass
class LoopDeps:
    """Collaborators injected by the caller."""
    harness: Harness
    git: object                      # GitRepo or anything with the same methods
    nav_harness: Harness | None = None
    sleep: Callable[[float], None] = field(default=time.sleep)


def _truncate(text: str, limit: int = MAX_ERROR_LENGTH) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def pr_title(task: str) -> str:
    first_line = task.strip().splitlines()[0] if task.strip() else "Memento loop changes"
    if len(first_line) > PR_TITLE_LENGTH:
        return first_line[:PR_TITLE_LENGTH - 3] + "..."
    return first_line


def pr_body(task: str, completion_message: str | None, plan_summaries: list[tuple[int, str]]) -> str:
    iterations = "\n".join(f"- **{i}**: {summary}" for i, summary in plan_summaries)
    return (
        f"## Summary\n\n{completion_message or task}\n\n"
        f"## Iterations\n\n{iterations or '- (none)'}\n\n"
        f"---\n*Created by autonav memento loop*"
    )


def _relay(role: str, stream: Generator[AgentEvent, None, object]) -> Generator[AgentActivity, None, object]:
    """Forward an agent stream as AgentActivity events; return its final value."""
    while True:
        try:
            event = next(stream)
        except StopIteration as done:
            return done.value
        if isinstance(event, ToolUseEvent):
            yield AgentActivity(role=role, tool_name=event.name, tool_input=event.input)


def _recent_log(git) -> str:
    try:
        return git.recent_log(GIT_LOG_COUNT)
    except GitError:
        return ""


def _plan_with_retries(
    iteration: int,
    context: LoopContext,
    options: MementoOptions,
    deps: LoopDeps,
) -> Generator[AgentActivity | RateLimitWait, None, PlannerOutcome]:
    """Ask the navigator for a plan, sleeping and retrying on rate limits
    and transient connection errors."""
    harness = deps.nav_harness or deps.harness
    agent_options = AgentOptions(model=options.nav_model, max_turns=options.max_turns, timeout=options.timeout)
    attempt = 0
    while True:
        try:
            return (yield from _relay("nav", stream_navigator(
                harness,
                context,
                options.nav_system_prompt,
                options.nav_identity,
                agent_options,
                git_log=_recent_log(deps.git),
            )))
        except PlannerExecutionError as e:
            message = " ".join(filter(None, [str(e), e.detail]))
            if e.rate_limit:
                info = parse_rate_limit_error(message)
                wait = wait_seconds_for(info, attempt)
                event = RateLimitWait(iteration, attempt + 1, wait, info.reset_time_raw)
            elif is_transient_connection_error(message):
                wait = connection_retry_delay(attempt)
                event = RateLimitWait(iteration, attempt + 1, wait, reason="connection error")
            else:
                raise
            if attempt >= options.rate_limit_retries:
                raise
            yield event
            deps.sleep(wait)
            attempt += 1


def _commit_iteration(iteration: int, summary: str, git) -> IterationCommitted | None:
    """Commit the iteration's work under `summary`. Returns None when the tree was clean."""
    commit_hash = git.commit(f"{summary}\n\nMemento loop iteration {iteration}")
    if commit_hash is None:
        return None
    stats = git.last_commit_diff_stats()
    return IterationCommitted(
        iteration=iteration,
        commit_hash=commit_hash,
        message=summary,
        lines_added=stats.lines_added,
        lines_removed=stats.lines_removed,
    )


def _staged_diff(git) -> str:
    git.stage_all()
    return git.staged_diff()


def _review_iteration(
    iteration: int,
    context: LoopContext,
    options: MementoOptions,
    deps: LoopDeps,
) -> Iterator[AgentActivity | ReviewRound | FixFinished | Notice]:
    """Review the staged diff with the navigator model and run the fixer on
    what it flags, until LGTM or the round budget runs out. A failed review
    or fix ends the phase; the work is committed as it stands."""
    rounds = min(options.review_rounds, MAX_REVIEW_ROUNDS)
    review_options = AgentOptions(model=options.nav_model, max_turns=1, timeout=options.timeout)
    fix_options = AgentOptions(model=options.model, max_turns=options.max_turns, timeout=options.timeout)
    history: list[ReviewRecord] = []

    for round_no in range(1, rounds + 1):
        try:
            diff = _staged_diff(deps.git)
        except GitError as e:
            yield Notice(f"Review skipped: {_truncate(str(e))}", level="warning")
            return
        if not diff.strip():
            return

        try:
            verdict = yield from _relay("reviewer", stream_review(
                deps.nav_harness or deps.harness, options.nav_directory, diff, review_options, history,
            ))
        except AgentReplyError as e:
            yield Notice(f"Review failed, committing as-is: {_truncate(str(e))}", level="warning")
            return
        yield ReviewRound(
            iteration=iteration,
            round=round_no,
            max_rounds=rounds,
            lgtm=verdict.lgtm,
            issues=tuple(verdict.issues),
            duration_ms=verdict.duration_ms,
        )
        if verdict.lgtm:
            return

        fix = yield from _relay("fixer", stream_fixer(deps.harness, context, verdict.text, fix_options, history))
        yield FixFinished(
            iteration=iteration,
            round=round_no,
            success=fix.success,
            summary=fix.summary,
            files_modified=tuple(fix.files_modified),
            errors=tuple(fix.errors or ()),
            duration_ms=fix.duration_ms,
        )
        if not fix.success:
            return
        history.append(ReviewRecord(round=round_no, issues=verdict.text, fix_summary=fix.summary))

    yield Notice(f"Review still had issues after {rounds} round(s); committing anyway", level="warning")


def _commit_message(
    plan_summary: str, options: MementoOptions, deps: LoopDeps,
) -> Generator[AgentActivity, None, str]:
    """The generated commit message when enabled, else the plan summary."""
    if not options.generate_commit_message:
        return plan_summary
    try:
        diff = _staged_diff(deps.git)
    except GitError:
        return plan_summary
    if not diff.strip():
        return plan_summary
    agent_options = AgentOptions(model=options.model, max_turns=1, timeout=options.timeout)
    return (yield from _relay("committer", stream_commit_message(
        deps.harness, options.code_directory, diff, agent_options,
    )))


def _prepare_repo(options: MementoOptions, git) -> Iterator[Notice]:
    if git.ensure_repo():
        yield Notice(f"Initialized git repository in {options.code_directory}")
    if git.has_uncommitted_changes():
        if options.commit_dirty:
            commit_hash = git.commit(DIRTY_COMMIT_MESSAGE)
            yield Notice(f"Committed existing changes before starting ({commit_hash})")
        else:
            yield Notice(
                "Code directory has uncommitted changes; they will be mixed into the first iteration's work",
                level="warning",
            )
    if options.branch:
        if git.create_branch(options.branch):
            yield Notice(f"Created and switched to branch: {options.branch}")
        else:
            yield Notice(f"Switched to existing branch: {options.branch}")


def iter_memento_loop(
    options: MementoOptions, deps: LoopDeps,
) -> Iterator[LoopStarted | Notice | IterationStarted | PlanReceived | AgentActivity | RateLimitWait | ImplementerFinished | ReviewRound | FixFinished | IterationCommitted | LoopAborted | PullRequestOpened | LoopFinished]:
    """Run the memento loop, yielding progress events. The last event is
    always LoopFinished carrying the MementoResult."""
    start = time.monotonic()
    errors: list[str] = []
    git = deps.git

    def _finish(success: bool, iterations: int, **kwargs) -> LoopFinished:
        return LoopFinished(MementoResult(
            success=success,
            iterations=iterations,
            duration_ms=int((time.monotonic() - start) * 1000),
            errors=list(errors) or None,
            **kwargs,
        ))

    # INIT
    try:
        yield from _prepare_repo(options, git)
        branch = options.branch or git.current_branch()
    except GitError as e:
        errors.append(f"Git setup failed: {e}")
        yield _finish(False, 0, branch=options.branch)
        return

    yield LoopStarted(
        code_directory=options.code_directory,
        nav_directory=options.nav_directory,
        task=options.task,
        branch=branch,
        max_iterations=options.max_iterations,
    )

    impl_options = AgentOptions(model=options.model, max_turns=options.max_turns, timeout=options.timeout)
    iteration = 0
    consecutive_failures = 0
    completion_message: str | None = None
    plan_summaries: list[tuple[int, str]] = []
    completed = False
    aborted = False

    while options.max_iterations <= 0 or iteration < options.max_iterations:
        current = iteration + 1
        yield IterationStarted(current, options.max_iterations)
        context = LoopContext(
            code_directory=options.code_directory,
            nav_directory=options.nav_directory,
            task=options.task,
            iteration=current,
            max_iterations=options.max_iterations,
            branch=branch,
            promise=options.promise,
        )

        # PLANNING
        try:
            outcome = yield from _plan_with_retries(current, context, options, deps)
        except (PlannerExecutionError, PlanParseError) as e:
            errors.append(f"Iteration {current}: {_truncate(str(e))}")
            yield LoopAborted(current, str(e))
            aborted = True
            break

        iteration = current
        plan = outcome.plan
        plan_summaries.append((current, plan.summary))
        yield PlanReceived(
            iteration=current,
            summary=plan.summary,
            step_count=len(plan.steps),
            is_complete=plan.is_complete,
            completion_message=plan.completion_message,
            duration_ms=outcome.duration_ms,
        )

        if plan.is_complete:
            completion_message = plan.completion_message
            completed = True
            break

        # IMPLEMENTING
        result = yield from _relay("implementer", stream_implementer(deps.harness, context, plan, impl_options))
        yield ImplementerFinished(
            iteration=current,
            success=result.success,
            summary=result.summary,
            files_modified=tuple(result.files_modified),
            errors=tuple(result.errors or ()),
            duration_ms=result.duration_ms,
            tokens_used=result.tokens_used,
        )
        if result.success:
            consecutive_failures = 0
        else:
            consecutive_failures += 1
            detail = "; ".join(result.errors or ()) or "Unknown error"
            errors.append(f"Iteration {current}: Implementer failed - {_truncate(detail)}")

        # REVIEWING
        if options.review_rounds > 0:
            yield from _review_iteration(current, context, options, deps)

        if options.auto_commit:
            message = yield from _commit_message(plan.summary, options, deps)
            try:
                committed = _commit_iteration(current, message, git)
            except GitError as e:
                errors.append(f"Iteration {current}: Commit failed - {_truncate(str(e))}")
            else:
                if committed is not None:
                    yield committed

        if 0 < options.max_consecutive_failures <= consecutive_failures:
            message = f"Aborting after {consecutive_failures} consecutive implementer failures"
            errors.append(message)
            yield LoopAborted(current, message)
            aborted = True
            break

    if not completed and not aborted:
        errors.append(f"Max iterations ({options.max_iterations}) reached without completion")

    # FINALIZING
    pr_url = None
    if completed and options.pr:
        try:
            pr_url = publish_branch(
                git, branch, pr_title(options.task),
                pr_body(options.task, completion_message, plan_summaries),
            )
        except FinalizationError as e:
            errors.append(f"Pull request not created: {e}")
        else:
            yield PullRequestOpened(url=pr_url, branch=branch)

    yield _finish(
        completed,
        iteration,
        completion_message=completion_message,
        pr_url=pr_url,
        branch=branch,
    )


def run_memento_loop(
    options: MementoOptions,
    deps: LoopDeps,
    on_event: Callable[[object], None] | None = None,
) -> MementoResult:
    """Drain iter_memento_loop and return its result."""
    result = None
    for event in iter_memento_loop(options, deps):
        if on_event is not None:
            on_event(event)
        if isinstance(event, LoopFinished):
            result = event.result
    return result
