"""Harness adapter that drives an HTTP model endpoint directly.

The tool loop runs engine-side: each round is one model.complete call, tool
calls are executed through FileGuard-confined executors, and results are fed
back until the model answers without calling a tool or the turn budget runs
out. Extra tools passed in AgentConfig.tools (the plan submission tool) are
not executed; calling one ends the session once the round is answered.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Iterator

from autonav.events import (
    AgentEvent, ErrorEvent, ResultEvent, TextEvent, ToolResultEvent, ToolUseEvent,
)
from autonav.fileguard import FileGuard
from autonav.harness import PERMISSION_READ_ONLY, AgentConfig, Harness
from autonav.model import ModelError, complete, tool_result_messages
from autonav.tools import FILE_WRITE_TOOL_NAMES, execute_file_tool, tools_for


class HttpRun:
    """One HTTP harness session. Iterate for events; cancel() stops it
    before the next model round or tool call."""

    def __init__(self, harness: "HttpHarness", config: AgentConfig, prompt: str):
        self._harness = harness
        self._config = config
        self._prompt = prompt
        self._cancelled = threading.Event()
        self._events = self._run()

    def __iter__(self):
        return self

    def __next__(self) -> AgentEvent:
        return next(self._events)

    def cancel(self) -> None:
        self._cancelled.set()

    def _run(self) -> Iterator[AgentEvent]:
        config = self._config
        model_config = self._harness.model_config
        start = time.monotonic()

        guard = FileGuard(
            config.cwd,
            read_roots=config.additional_directories,
            writable=config.permission_mode != PERMISSION_READ_ONLY,
        )
        file_tools = [
            t for t in tools_for(guard) if t["name"] not in config.disallowed_tools
        ]
        extra_names = {t["name"] for t in config.tools}
        tools = file_tools + list(config.tools)

        messages: list[dict] = [{"role": "user", "content": self._prompt}]
        input_tokens = 0
        output_tokens = 0
        last_text = ""

        def _elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        def _result(success: bool, num_turns: int, errors: tuple[str, ...] = ()) -> ResultEvent:
            return ResultEvent(
                success=success,
                text=last_text,
                errors=errors,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=_elapsed(),
                num_turns=num_turns,
            )

        for turn in range(1, config.max_turns + 1):
            if self._cancelled.is_set():
                return
            try:
                reply = self._harness.completion(
                    model_config=model_config,
                    model=config.model or model_config.get("model", ""),
                    system=config.system_prompt,
                    messages=messages,
                    tools=tools,
                )
            except ModelError as e:
                yield ErrorEvent(str(e), retryable=e.retryable)
                yield _result(False, turn, (str(e),))
                return
            # Cancelled while the request was in flight
            if self._cancelled.is_set():
                return

            input_tokens += reply.input_tokens
            output_tokens += reply.output_tokens

            if reply.text.strip():
                last_text = reply.text
                yield TextEvent(reply.text)

            if reply.truncated:
                message = "Model output was truncated at the max_tokens limit"
                yield ErrorEvent(message)
                yield _result(False, turn, (message,))
                return

            if not reply.tool_calls:
                yield _result(True, turn)
                return

            results: list[tuple[str, str]] = []
            finished = False
            for call in reply.tool_calls:
                if self._cancelled.is_set():
                    return
                yield ToolUseEvent(name=call.name, id=call.id, input=call.input)
                if call.name in extra_names:
                    output = "Received."
                    finished = True
                else:
                    output = execute_file_tool(call.name, call.input, guard)
                yield ToolResultEvent(
                    tool_use_id=call.id,
                    content=output,
                    is_error=output.startswith("Error:"),
                )
                results.append((call.id, output))

            if finished:
                yield _result(True, turn)
                return

            messages.extend(tool_result_messages(reply, results))

        message = f"Max turns ({config.max_turns}) reached"
        yield ErrorEvent(message)
        yield _result(False, config.max_turns, (message,))


class HttpHarness(Harness):
    """Runs agents against an Anthropic or OpenAI-compatible HTTP API.

    model_config is the navigator config.json "model" block: provider,
    base_url, model and an already-resolved api_key.
    """

    display_name = "HTTP"
    write_tools = FILE_WRITE_TOOL_NAMES

    def __init__(self, model_config: dict, completion: Callable = complete):
        self.model_config = model_config
        self.completion = completion

    def run(self, config: AgentConfig, prompt: str) -> HttpRun:
        return HttpRun(self, config, prompt)
