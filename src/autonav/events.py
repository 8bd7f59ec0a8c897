from __future__ import annotations

from dataclasses import dataclass, field


# --- Harness events ---
# Every harness adapter translates its native output into these five types.
# Consumers match on isinstance; nothing else may appear in a harness stream.


@dataclass(frozen=True)
class TextEvent:
    text: str


@dataclass(frozen=True)
class ToolUseEvent:
    name: str
    id: str
    input: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultEvent:
    tool_use_id: str
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    retryable: bool = False


@dataclass(frozen=True)
class ResultEvent:
    """Terminal event of a harness run."""
    success: bool
    text: str = ""
    errors: tuple[str, ...] = ()
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float | None = None
    duration_ms: int | None = None
    num_turns: int | None = None
    session_id: str | None = None

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


AgentEvent = TextEvent | ToolUseEvent | ToolResultEvent | ErrorEvent | ResultEvent


# --- Loop events ---
# Yielded by the memento loop controller for the caller to display.


@dataclass
class LoopStarted:
    code_directory: str
    nav_directory: str
    task: str
    branch: str | None
    max_iterations: int


@dataclass
class Notice:
    """Informational or warning line for the user."""
    message: str
    level: str = "info"   # "info", "warning" or "debug"


@dataclass
class IterationStarted:
    iteration: int
    max_iterations: int


@dataclass
class PlanReceived:
    iteration: int
    summary: str
    step_count: int
    is_complete: bool
    completion_message: str | None = None
    duration_ms: int = 0


@dataclass
class AgentActivity:
    """A tool call observed while an agent was running (verbose display)."""
    role: str   # "nav", "implementer", "reviewer", "fixer" or "committer"
    tool_name: str
    tool_input: dict = field(default_factory=dict)


@dataclass
class RateLimitWait:
    """The loop is sleeping before re-planning the same iteration."""
    iteration: int
    attempt: int
    wait_seconds: int
    reset_time: str | None = None
    reason: str = "rate limit"   # or "connection error"


@dataclass
class ImplementerFinished:
    iteration: int
    success: bool
    summary: str
    files_modified: tuple[str, ...]
    errors: tuple[str, ...]
    duration_ms: int
    tokens_used: int = 0


@dataclass
class ReviewRound:
    """The navigator model reviewed the staged diff once."""
    iteration: int
    round: int
    max_rounds: int
    lgtm: bool
    issues: tuple[str, ...] = ()
    duration_ms: int = 0


@dataclass
class FixFinished:
    iteration: int
    round: int
    success: bool
    summary: str
    files_modified: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    duration_ms: int = 0


@dataclass
class IterationCommitted:
    iteration: int
    commit_hash: str | None
    message: str
    lines_added: int = 0
    lines_removed: int = 0


@dataclass
class LoopAborted:
    iteration: int
    error: str


@dataclass
class PullRequestOpened:
    url: str
    branch: str


@dataclass
class LoopFinished:
    result: object   # MementoResult
