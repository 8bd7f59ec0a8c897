"""Agent harness abstraction.

A harness runs one agent session (model + system prompt + working directory
+ turn budget) and yields AgentEvents in the order the runtime produced them.
The navigator and implementer wrappers only ever talk to this interface.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Iterator

from autonav.events import AgentEvent

PERMISSION_READ_ONLY = "read-only"
PERMISSION_FULL = "full"

HARNESS_TYPES = ("claude-code", "http")
DEFAULT_HARNESS = "claude-code"


class HarnessTimeout(Exception):
    """Raised when a harness run exceeds its wall-clock budget."""
    pass


@dataclass(frozen=True)
class AgentConfig:
    """Configuration for a single agent session."""
    model: str
    system_prompt: str
    cwd: str
    max_turns: int = 50
    permission_mode: str = PERMISSION_FULL
    additional_directories: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    tools: tuple[dict, ...] = ()          # extra tool definitions offered to the agent
    timeout: float | None = None          # seconds; None = no limit


class Harness:
    """Base class for harness adapters.

    Subclasses set display_name and write_tools (the tool names that mutate
    files) and implement run(). The object returned by run() may expose a
    cancel() method; it is called from another thread when a run times out.
    """

    display_name = "harness"
    write_tools: frozenset[str] = frozenset()

    def run(self, config: AgentConfig, prompt: str) -> Iterable[AgentEvent]:
        raise NotImplementedError


def tool_basename(name: str) -> str:
    """Strip MCP-style namespacing: 'mcp__server__tool' → 'tool'."""
    return name.split("__")[-1] if name else name


_DONE = object()


def bounded_events(events: Iterable[AgentEvent], timeout: float | None) -> Iterator[AgentEvent]:
    """Yield events from a harness run, raising HarnessTimeout past the budget.

    With a timeout the stream is pumped by a daemon thread into a queue so a
    harness that blocks without producing events still times out. Exceptions
    raised by the harness are re-raised in the consumer.
    """
    if timeout is None:
        yield from events
        return

    q: queue.Queue = queue.Queue()

    def _pump() -> None:
        try:
            for event in events:
                q.put((event, None))
        except Exception as e:
            q.put((None, e))
        q.put((_DONE, None))

    worker = threading.Thread(target=_pump, name="harness-events", daemon=True)
    worker.start()

    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        try:
            if remaining <= 0:
                raise queue.Empty
            item, error = q.get(timeout=remaining)
        except queue.Empty:
            cancel = getattr(events, "cancel", None)
            if cancel is not None:
                cancel()
            raise HarnessTimeout(f"Agent run timed out after {timeout:g}s")
        if error is not None:
            raise error
        if item is _DONE:
            return
        yield item


def create_harness(harness_type: str, model_config: dict | None = None) -> Harness:
    """Instantiate a harness adapter by name."""
    if harness_type == "claude-code":
        from autonav.claude_harness import ClaudeCodeHarness
        return ClaudeCodeHarness()
    if harness_type == "http":
        from autonav.http_harness import HttpHarness
        return HttpHarness(model_config or {})
    raise ValueError(
        f'Invalid harness type: "{harness_type}". Valid types: {", ".join(HARNESS_TYPES)}'
    )
