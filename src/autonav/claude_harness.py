"""Harness adapter for the Claude Code CLI.

Runs `claude -p` with `--output-format stream-json` and flattens each JSON
line into AgentEvents. The CLI has no way to register in-process tools, so
AgentConfig.tools is not offered here; the navigator falls back to replying
with its plan as JSON text.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
import threading
from typing import Iterator

from autonav.events import (
    AgentEvent, ErrorEvent, ResultEvent, TextEvent, ToolResultEvent, ToolUseEvent,
)
from autonav.harness import PERMISSION_READ_ONLY, AgentConfig, Harness

CLAUDE_BIN = "claude"
STDERR_TAIL_LINES = 20


def _tool_result_text(content) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "\n".join(parts)
    return json.dumps(content) if content is not None else ""


def events_from_message(message: dict) -> list[AgentEvent]:
    """Flatten one stream-json message into zero or more AgentEvents."""
    events: list[AgentEvent] = []
    msg_type = message.get("type")

    if msg_type == "assistant":
        if message.get("error") == "rate_limit":
            events.append(ErrorEvent("Rate limit reached", retryable=True))
        for block in message.get("message", {}).get("content", []):
            if block.get("type") == "text":
                events.append(TextEvent(block.get("text", "")))
            elif block.get("type") == "tool_use":
                events.append(ToolUseEvent(
                    name=block.get("name", ""),
                    id=block.get("id", ""),
                    input=block.get("input") or {},
                ))

    elif msg_type == "user":
        content = message.get("message", {}).get("content", [])
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    events.append(ToolResultEvent(
                        tool_use_id=block.get("tool_use_id", ""),
                        content=_tool_result_text(block.get("content")),
                        is_error=bool(block.get("is_error")),
                    ))

    elif msg_type == "result":
        usage = message.get("usage") or {}
        success = message.get("subtype") == "success" and not message.get("is_error")
        errors = tuple(message.get("errors") or ())
        if success:
            text = message.get("result") or ""
        else:
            text = "; ".join(errors) or message.get("result") or ""
            if not errors and text:
                errors = (text,)
        events.append(ResultEvent(
            success=success,
            text=text,
            errors=errors,
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            cost_usd=message.get("total_cost_usd"),
            duration_ms=message.get("duration_ms"),
            num_turns=message.get("num_turns"),
            session_id=message.get("session_id"),
        ))

    return events


def build_command(config: AgentConfig, executable: str = CLAUDE_BIN) -> list[str]:
    cmd = [
        executable, "-p",
        "--output-format", "stream-json",
        "--verbose",
        "--max-turns", str(config.max_turns),
    ]
    if config.model:
        cmd += ["--model", config.model]
    if config.system_prompt:
        cmd += ["--system-prompt", config.system_prompt]
    for directory in config.additional_directories:
        cmd += ["--add-dir", directory]
    if config.disallowed_tools:
        cmd += ["--disallowedTools", ",".join(config.disallowed_tools)]
    if config.permission_mode == PERMISSION_READ_ONLY:
        cmd += ["--permission-mode", "default"]
    else:
        cmd += ["--permission-mode", "bypassPermissions"]
    return cmd


class ClaudeRun:
    """One `claude -p` subprocess. Iterate for events; cancel() kills it."""

    def __init__(self, config: AgentConfig, prompt: str, executable: str = CLAUDE_BIN):
        self._config = config
        self._prompt = prompt
        self._executable = executable
        self._proc: subprocess.Popen | None = None
        self._stderr_lines: list[str] = []
        self._events = self._run()

    def __iter__(self):
        return self

    def __next__(self) -> AgentEvent:
        return next(self._events)

    def cancel(self) -> None:
        if self._proc is not None and self._proc.poll() is None:
            self._proc.kill()

    def _drain_stderr(self, stream) -> None:
        debug = os.environ.get("AUTONAV_DEBUG") == "1"
        for line in stream:
            self._stderr_lines.append(line.rstrip("\n"))
            del self._stderr_lines[:-STDERR_TAIL_LINES]
            if debug:
                print(f"  [claude] {line.rstrip()}", file=sys.stderr)

    def _run(self) -> Iterator[AgentEvent]:
        cmd = build_command(self._config, self._executable)
        try:
            self._proc = subprocess.Popen(
                cmd,
                cwd=self._config.cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError:
            raise RuntimeError(
                f"'{self._executable}' not found on PATH. Install the Claude Code CLI "
                f"or use --harness http."
            )

        drain = threading.Thread(
            target=self._drain_stderr, args=(self._proc.stderr,), daemon=True,
        )
        drain.start()

        saw_result = False
        try:
            # A CLI that exits before reading the prompt is reported by its exit code
            try:
                self._proc.stdin.write(self._prompt)
            except BrokenPipeError:
                pass
            try:
                self._proc.stdin.close()
            except BrokenPipeError:
                pass
            for line in self._proc.stdout:
                line = line.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    continue
                for event in events_from_message(message):
                    if isinstance(event, ResultEvent):
                        saw_result = True
                    yield event
            self._proc.wait()
        finally:
            # Consumer stopped early or the run was cancelled
            if self._proc.poll() is None:
                self._proc.kill()
            self._proc.wait()
            drain.join(timeout=1)

        if not saw_result and self._proc.returncode:
            tail = "\n".join(self._stderr_lines[-5:])
            message = f"claude exited with code {self._proc.returncode}"
            if tail:
                message += f": {tail}"
            yield ErrorEvent(message, retryable=False)


class ClaudeCodeHarness(Harness):
    display_name = "Claude"
    write_tools = frozenset({
        "Write", "Edit", "MultiEdit", "NotebookEdit", "str_replace_based_edit_tool",
    })

    def __init__(self, executable: str = CLAUDE_BIN):
        self.executable = executable

    def run(self, config: AgentConfig, prompt: str) -> ClaudeRun:
        return ClaudeRun(config, prompt, self.executable)
