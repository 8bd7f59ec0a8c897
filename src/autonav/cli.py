import argparse
import sys
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from autonav import __version__
from autonav.config import (
    ConfigError, DEFAULT_IMPLEMENTER_MODEL, DEFAULT_MAX_TURNS, DEFAULT_NAV_MODEL,
    DEFAULT_RATE_LIMIT_RETRIES, load_model_config, load_nav_config, load_nav_system_prompt,
    nav_identity, resolve_harness_type, resolve_task,
)
from autonav.events import (
    AgentActivity, FixFinished, ImplementerFinished, IterationCommitted, IterationStarted,
    LoopAborted, LoopFinished, LoopStarted, Notice, PlanReceived, PullRequestOpened,
    RateLimitWait, ReviewRound,
)
from autonav.gitops import GitRepo
from autonav.harness import HARNESS_TYPES, create_harness
from autonav.loop import LoopDeps, MementoOptions, run_memento_loop
from autonav.preflight import ValidationError, check_harness_available, check_pr_options, validate
from autonav.prompts import DEFAULT_PROMISE
from autonav.ratelimit import format_duration
from autonav.review import MAX_REVIEW_ROUNDS
from autonav.tools import format_tool_operation

ROLE_TAGS = {
    "nav": "Nav",
    "implementer": "Implementer",
    "reviewer": "Review",
    "fixer": "Fix",
    "committer": "Commit",
}


class ConsoleReporter:
    """Renders loop events. Detail (tool calls, notices at debug level) only
    with verbose."""

    def __init__(self, console: Console, verbose: bool = False):
        self.console = console
        self.verbose = verbose

    def __call__(self, event) -> None:
        c = self.console
        if isinstance(event, LoopStarted):
            c.print("[bold]Memento Loop[/bold]")
            c.print(f"  Code:       {escape(event.code_directory)}")
            c.print(f"  Navigator:  {escape(event.nav_directory)}")
            c.print(f"  Task:       {escape(event.task)}")
            c.print(f"  Branch:     {escape(event.branch or '(current)')}")
            limit = event.max_iterations or "unlimited"
            c.print(f"  Iterations: {limit}")
        elif isinstance(event, Notice):
            if event.level == "warning":
                c.print(f"[yellow]Warning: {escape(event.message)}[/yellow]")
            elif event.level != "debug" or self.verbose:
                c.print(f"[dim]{escape(event.message)}[/dim]")
        elif isinstance(event, IterationStarted):
            bound = f"/{event.max_iterations}" if event.max_iterations else ""
            c.print()
            c.rule(f"Iteration {event.iteration}{bound}")
        elif isinstance(event, AgentActivity):
            if self.verbose:
                tag = ROLE_TAGS.get(event.role, event.role)
                op = format_tool_operation(event.tool_name, event.tool_input)
                c.print(f"[dim]  [{tag}] {escape(op)}[/dim]")
        elif isinstance(event, RateLimitWait):
            c.print(
                f"[yellow]Waiting {format_duration(event.wait_seconds)} after {event.reason} "
                f"(attempt {event.attempt})[/yellow]"
            )
            if event.reset_time:
                c.print(f"[dim]  Reset time: {escape(event.reset_time)}[/dim]")
        elif isinstance(event, PlanReceived):
            c.print(f"[cyan][Nav][/cyan] {escape(event.summary)}")
            if event.is_complete:
                c.print("[green]  Navigator reports the task is complete[/green]")
            else:
                c.print(f"[dim]  {event.step_count} step(s), planned in {format_duration(event.duration_ms // 1000)}[/dim]")
        elif isinstance(event, ImplementerFinished):
            status = "[green]done[/green]" if event.success else "[red]failed[/red]"
            c.print(f"[magenta][Implementer][/magenta] {status} in {format_duration(event.duration_ms // 1000)}")
            for path in event.files_modified:
                c.print(f"  [dim]modified[/dim] {escape(path)}")
            for error in event.errors:
                c.print(f"  [red]{escape(error)}[/red]")
            if self.verbose and event.summary:
                c.print(f"[dim]{escape(event.summary)}[/dim]")
        elif isinstance(event, ReviewRound):
            prefix = f"[green][Review][/green] round {event.round}/{event.max_rounds}:"
            if event.lgtm:
                c.print(f"{prefix} LGTM")
            else:
                c.print(f"{prefix} {len(event.issues)} issue(s)")
                for issue in event.issues:
                    c.print(f"  [yellow]{escape(issue)}[/yellow]")
        elif isinstance(event, FixFinished):
            status = "[green]done[/green]" if event.success else "[red]failed[/red]"
            c.print(f"[magenta][Fix][/magenta] {status} in {format_duration(event.duration_ms // 1000)}")
            for error in event.errors:
                c.print(f"  [red]{escape(error)}[/red]")
        elif isinstance(event, IterationCommitted):
            c.print(
                f"[dim]Committed {escape(event.commit_hash or '')} "
                f"(+{event.lines_added}/-{event.lines_removed})[/dim]"
            )
        elif isinstance(event, LoopAborted):
            c.print(f"[red]Aborted at iteration {event.iteration}: {escape(event.error)}[/red]")
        elif isinstance(event, PullRequestOpened):
            c.print(f"[green]Pull request: {escape(event.url)}[/green]")
        elif isinstance(event, LoopFinished):
            self._summary(event.result)

    def _summary(self, result) -> None:
        c = self.console
        c.print()
        if result.success:
            c.print("[bold green]Memento loop completed[/bold green]")
        else:
            c.print("[bold red]Memento loop did not complete[/bold red]")
        c.print(f"  Iterations: {result.iterations}")
        c.print(f"  Duration:   {format_duration(result.duration_ms // 1000)}")
        if result.branch:
            c.print(f"  Branch:     {escape(result.branch)}")
        if result.pr_url:
            c.print(f"  PR:         {escape(result.pr_url)}")
        if result.completion_message:
            c.print(f"\n{escape(result.completion_message)}")
        if result.errors:
            c.print("\n[yellow]Errors:[/yellow]")
            for error in result.errors:
                c.print(f"  - {escape(error)}")


def cmd_memento(args):
    try:
        checked = validate(args.code_directory, args.nav_directory, args.max_iterations)
        check_pr_options(args.pr, args.branch)
        nav_config = load_nav_config(checked.nav_directory)
        harness_type = resolve_harness_type(args.harness, nav_config)
        check_harness_available(harness_type)
        model_config = None
        if harness_type == "http":
            model_config = load_model_config(checked.nav_directory, nav_config)
        nav_system_prompt = load_nav_system_prompt(checked.nav_directory)
    except (ValidationError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)

    options = MementoOptions(
        code_directory=str(checked.code_directory),
        nav_directory=str(checked.nav_directory),
        nav_system_prompt=nav_system_prompt,
        task=resolve_task(args.task, checked.code_directory),
        nav_identity=nav_identity(nav_config),
        max_iterations=checked.max_iterations,
        promise=args.promise,
        branch=args.branch,
        pr=args.pr,
        model=args.model,
        nav_model=args.nav_model,
        max_turns=args.max_turns,
        timeout=args.timeout,
        auto_commit=not args.no_commit,
        commit_dirty=args.commit_dirty,
        max_consecutive_failures=args.max_consecutive_failures,
        rate_limit_retries=args.rate_limit_retries,
        review_rounds=args.review_rounds,
        generate_commit_message=args.generate_commit_message,
    )
    deps = LoopDeps(
        harness=create_harness(harness_type, model_config),
        git=GitRepo(checked.code_directory),
    )
    reporter = ConsoleReporter(Console(), verbose=args.verbose)

    try:
        result = run_memento_loop(options, deps, on_event=reporter)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        raise SystemExit(130)

    raise SystemExit(0 if result.success else 1)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got '{value}'")
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def _review_rounds(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got '{value}'")
    if not 0 <= number <= MAX_REVIEW_ROUNDS:
        raise argparse.ArgumentTypeError(f"must be between 0 and {MAX_REVIEW_ROUNDS}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autonav", description="Autonav navigator toolkit")
    parser.add_argument("--version", action="version", version=f"autonav {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    memento = subparsers.add_parser(
        "memento", help="Run the memento loop: navigator plans, implementer builds, git remembers",
    )
    memento.add_argument("code_directory", help="Directory the implementer works in")
    memento.add_argument("nav_directory", help="Navigator directory (must contain CLAUDE.md)")
    memento.add_argument("--task", help="Task description (default: TASK.md in the code directory)")
    memento.add_argument("--max-iterations", default="0", help="Iteration bound; 0 = unlimited (default: 0)")
    memento.add_argument("--promise", default=DEFAULT_PROMISE, help=f"Completion signal text (default: {DEFAULT_PROMISE})")
    memento.add_argument("--branch", help="Git branch to work on (created if missing)")
    memento.add_argument("--pr", action="store_true", help="Push the branch and open a pull request on completion")
    memento.add_argument("--verbose", action="store_true", help="Show agent tool calls and summaries")
    memento.add_argument("--model", default=DEFAULT_IMPLEMENTER_MODEL, help=f"Implementer model (default: {DEFAULT_IMPLEMENTER_MODEL})")
    memento.add_argument("--nav-model", default=DEFAULT_NAV_MODEL, help=f"Navigator model (default: {DEFAULT_NAV_MODEL})")
    memento.add_argument("--max-turns", type=_positive_int, default=DEFAULT_MAX_TURNS, help=f"Turn budget per agent run (default: {DEFAULT_MAX_TURNS})")
    memento.add_argument("--timeout", type=float, default=None, help="Seconds per agent run (default: no limit)")
    memento.add_argument("--harness", choices=HARNESS_TYPES, default=None, help="Agent runtime (default: AUTONAV_HARNESS, config.json, then claude-code)")
    memento.add_argument("--no-commit", action="store_true", help="Do not commit after each implementer run")
    memento.add_argument("--commit-dirty", action="store_true", help="Commit existing uncommitted changes before starting")
    memento.add_argument("--max-consecutive-failures", type=int, default=0, help="Abort after N implementer failures in a row (default: 0 = never)")
    memento.add_argument("--rate-limit-retries", type=int, default=DEFAULT_RATE_LIMIT_RETRIES, help=f"Re-plan attempts after rate limits (default: {DEFAULT_RATE_LIMIT_RETRIES})")
    memento.add_argument("--review-rounds", type=_review_rounds, default=0, help=f"Review/fix rounds after each implementer run, at most {MAX_REVIEW_ROUNDS} (default: 0 = no review)")
    memento.add_argument("--generate-commit-message", action="store_true", help="Have the implementer model write each commit message from the diff")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "memento":
        cmd_memento(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
