"""One model round against an HTTP provider, for the HTTP harness.

Anthropic's Messages API and OpenAI-compatible chat completions (which
covers Ollama) are supported. Each call returns a ModelTurn with the text,
the requested tool calls, token usage and the assistant message to append
to the history. Failures come back as ModelError with `retryable` already
decided, so the harness never looks at status codes or httpx types.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

import httpx

REQUEST_TIMEOUT = 600.0
DEFAULT_MAX_TOKENS = 16384
ANTHROPIC_VERSION = "2023-06-01"


class ModelError(Exception):
    """Raised when a model round fails: an error response or a transport error."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass
class ModelTurn:
    text: str
    tool_calls: list[ToolCall]
    assistant_message: dict
    provider: str
    input_tokens: int = 0
    output_tokens: int = 0
    truncated: bool = False     # stopped at max_tokens; tool calls were dropped


def _error_detail(resp: httpx.Response) -> str:
    try:
        return resp.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return resp.text


def _post(url: str, body: dict, headers: dict) -> dict:
    try:
        resp = httpx.post(url, json=body, headers=headers, timeout=REQUEST_TIMEOUT)
    except httpx.HTTPError as e:
        # Connection resets, read timeouts and the like are worth a retry
        raise ModelError(f"{type(e).__name__}: {e}", retryable=True)
    if resp.status_code >= 400:
        raise ModelError(
            f"API error ({resp.status_code}): {_error_detail(resp)}",
            status_code=resp.status_code,
            retryable=resp.status_code == 429 or resp.status_code >= 500,
        )
    return resp.json()


def complete(
    model_config: dict,
    model: str,
    system: str,
    messages: list[dict],
    tools: list[dict],
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> ModelTurn:
    """Run one round. `messages` holds user/assistant/tool turns only;
    the system prompt is passed separately."""
    base_url = model_config["base_url"].rstrip("/")
    api_key = model_config.get("api_key")
    if model_config.get("provider", "anthropic") == "anthropic":
        return _anthropic_turn(base_url, api_key, model, system, messages, tools, max_tokens)
    return _openai_turn(base_url, api_key, model, system, messages, tools, max_tokens)


def tool_result_messages(turn: ModelTurn, results: list[tuple[str, str]]) -> list[dict]:
    """History entries for the assistant turn plus its (tool_call_id, output) results."""
    if turn.provider == "anthropic":
        return [
            turn.assistant_message,
            {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": call_id, "content": output}
                for call_id, output in results
            ]},
        ]
    return [turn.assistant_message] + [
        {"role": "tool", "tool_call_id": call_id, "content": output}
        for call_id, output in results
    ]


def _anthropic_turn(base_url, api_key, model, system, messages, tools, max_tokens) -> ModelTurn:
    body = {
        "model": model,
        "max_tokens": max_tokens,
        # The system prompt is identical every round of a session
        "system": [{"type": "text", "text": system, "cache_control": {"type": "ephemeral"}}],
        "messages": messages,
    }
    if tools:
        body["tools"] = tools
    data = _post(
        f"{base_url}/v1/messages",
        body,
        {"x-api-key": api_key or "", "anthropic-version": ANTHROPIC_VERSION},
    )

    blocks = data.get("content") or []
    truncated = data.get("stop_reason") == "max_tokens"
    calls = []
    if not truncated:
        calls = [
            ToolCall(id=b["id"], name=b["name"], input=b.get("input") or {})
            for b in blocks if b.get("type") == "tool_use"
        ]
    usage = data.get("usage") or {}
    return ModelTurn(
        text="\n\n".join(b["text"] for b in blocks if b.get("type") == "text"),
        tool_calls=calls,
        assistant_message={"role": "assistant", "content": blocks},
        provider="anthropic",
        input_tokens=(
            usage.get("input_tokens", 0)
            + usage.get("cache_read_input_tokens", 0)
            + usage.get("cache_creation_input_tokens", 0)
        ),
        output_tokens=usage.get("output_tokens", 0),
        truncated=truncated,
    )


def _openai_turn(base_url, api_key, model, system, messages, tools, max_tokens) -> ModelTurn:
    body: dict = {
        "model": model,
        "max_tokens": max_tokens,
        "messages": [{"role": "system", "content": system}, *messages],
    }
    if tools:
        body["tools"] = [
            {"type": "function", "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t["input_schema"],
            }}
            for t in tools
        ]
    headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
    data = _post(f"{base_url}/v1/chat/completions", body, headers)

    try:
        choice = data["choices"][0]
    except (KeyError, IndexError):
        raise ModelError("API returned no choices")
    message = choice.get("message") or {}
    calls = []
    for tc in message.get("tool_calls") or []:
        try:
            args = json.loads(tc["function"].get("arguments") or "{}")
        except json.JSONDecodeError:
            args = {}
        calls.append(ToolCall(id=tc["id"], name=tc["function"]["name"], input=args))
    usage = data.get("usage") or {}
    return ModelTurn(
        text=message.get("content") or "",
        tool_calls=calls,
        assistant_message=dict(message, role="assistant"),
        provider="openai",
        input_tokens=usage.get("prompt_tokens", 0),
        output_tokens=usage.get("completion_tokens", 0),
        truncated=choice.get("finish_reason") == "length",
    )
