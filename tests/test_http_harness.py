import threading

import pytest

from autonav.events import ErrorEvent, ResultEvent, TextEvent, ToolResultEvent, ToolUseEvent
from autonav.harness import PERMISSION_READ_ONLY, AgentConfig, HarnessTimeout, bounded_events
from autonav.http_harness import HttpHarness
from autonav.model import ModelError, ModelTurn, ToolCall
from autonav.plan import plan_tool_schema

MODEL_CONFIG = {"provider": "anthropic", "base_url": "https://api.anthropic.com", "api_key": "sk-test"}


def _turn(text="", tool_calls=None, input_tokens=10, output_tokens=5, truncated=False):
    return ModelTurn(
        text=text,
        tool_calls=tool_calls or [],
        assistant_message={"role": "assistant", "content": []},
        provider="anthropic",
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        truncated=truncated,
    )


def _write_call(path="app.py", content="x = 1\n"):
    return ToolCall(id="t1", name="file_write", input={"path": path, "content": content})


class FakeCompletion:
    """Returns queued rounds (or raises queued exceptions) and records calls."""

    def __init__(self, *rounds, on_call=None):
        self.rounds = list(rounds)
        self.calls = []
        self.on_call = on_call

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if self.on_call is not None:
            self.on_call()
        item = self.rounds.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _config(cwd, **overrides):
    values = dict(model="claude-haiku-4-5", system_prompt="sys", cwd=str(cwd), max_turns=5)
    values.update(overrides)
    return AgentConfig(**values)


def test_answer_without_tools_ends_session(tmp_path):
    completion = FakeCompletion(_turn("All done"))
    events = list(HttpHarness(MODEL_CONFIG, completion=completion).run(_config(tmp_path), "do it"))
    assert events[0] == TextEvent("All done")
    result = events[-1]
    assert isinstance(result, ResultEvent)
    assert result.success is True
    assert result.text == "All done"
    assert result.num_turns == 1
    call = completion.calls[0]
    assert call["model"] == "claude-haiku-4-5"
    assert call["model_config"] is MODEL_CONFIG
    assert call["system"] == "sys"
    assert call["messages"] == [{"role": "user", "content": "do it"}]


def test_file_tools_execute_in_cwd(tmp_path):
    completion = FakeCompletion(
        _turn("Writing", [_write_call()]),
        _turn("Wrote app.py"),
    )
    events = list(HttpHarness(MODEL_CONFIG, completion=completion).run(_config(tmp_path), "do it"))
    assert (tmp_path / "app.py").read_text() == "x = 1\n"
    tool_use = next(e for e in events if isinstance(e, ToolUseEvent))
    assert tool_use.name == "file_write"
    tool_result = next(e for e in events if isinstance(e, ToolResultEvent))
    assert tool_result.is_error is False
    result = events[-1]
    assert result.success is True
    assert result.input_tokens == 20
    assert result.output_tokens == 10
    assert result.num_turns == 2
    assert len(completion.calls) == 2


def test_read_only_session_refuses_writes(tmp_path):
    completion = FakeCompletion(
        _turn("", [_write_call(content="x")]),
        _turn("ok"),
    )
    config = _config(tmp_path, permission_mode=PERMISSION_READ_ONLY)
    events = list(HttpHarness(MODEL_CONFIG, completion=completion).run(config, "look"))
    tool_result = next(e for e in events if isinstance(e, ToolResultEvent))
    assert tool_result.is_error is True
    assert not (tmp_path / "app.py").exists()
    offered = [t["name"] for t in completion.calls[0]["tools"]]
    assert offered == ["file_read", "file_list"]


def test_disallowed_tools_not_offered(tmp_path):
    completion = FakeCompletion(_turn("ok"))
    config = _config(tmp_path, disallowed_tools=("run_command",))
    list(HttpHarness(MODEL_CONFIG, completion=completion).run(config, "x"))
    offered = [t["name"] for t in completion.calls[0]["tools"]]
    assert "run_command" not in offered
    assert "file_write" in offered


def test_submit_tool_ends_session(tmp_path):
    plan = {"summary": "s", "steps": [], "isComplete": True}
    completion = FakeCompletion(
        _turn("Here is the plan", [ToolCall(id="p1", name="submit_implementation_plan", input=plan)]),
    )
    config = _config(tmp_path, permission_mode=PERMISSION_READ_ONLY, tools=(plan_tool_schema(),))
    events = list(HttpHarness(MODEL_CONFIG, completion=completion).run(config, "plan"))
    submitted = next(e for e in events if isinstance(e, ToolUseEvent))
    assert submitted.input == plan
    assert next(e for e in events if isinstance(e, ToolResultEvent)).content == "Received."
    assert events[-1].success is True
    assert len(completion.calls) == 1
    assert completion.calls[0]["tools"][-1]["name"] == "submit_implementation_plan"


@pytest.mark.parametrize("status,retryable", [(429, True), (None, True), (400, False)])
def test_model_error_becomes_failed_result(tmp_path, status, retryable):
    completion = FakeCompletion(ModelError(f"API error ({status}): nope", status, retryable=retryable))
    events = list(HttpHarness(MODEL_CONFIG, completion=completion).run(_config(tmp_path), "x"))
    assert events[0] == ErrorEvent(f"API error ({status}): nope", retryable=retryable)
    assert events[1].success is False
    assert events[1].errors == (f"API error ({status}): nope",)


def test_max_turns_reached(tmp_path):
    call = ToolCall(id="t", name="file_list", input={"path": "."})
    completion = FakeCompletion(*[_turn("", [call]) for _ in range(2)])
    events = list(HttpHarness(MODEL_CONFIG, completion=completion).run(_config(tmp_path, max_turns=2), "x"))
    assert events[-2] == ErrorEvent("Max turns (2) reached")
    assert events[-1].success is False
    assert events[-1].num_turns == 2


def test_cancel_stops_before_next_turn(tmp_path):
    call = ToolCall(id="t", name="file_list", input={"path": "."})
    completion = FakeCompletion(_turn("", [call]), _turn("never"))
    run = HttpHarness(MODEL_CONFIG, completion=completion).run(_config(tmp_path), "x")
    seen = []
    for event in run:
        seen.append(event)
        if isinstance(event, ToolResultEvent):
            run.cancel()
    assert len(completion.calls) == 1
    assert not any(isinstance(e, ResultEvent) for e in seen)


def test_truncated_turn_fails_without_running_tools(tmp_path):
    completion = FakeCompletion(_turn("Writing the fi", truncated=True))
    events = list(HttpHarness(MODEL_CONFIG, completion=completion).run(_config(tmp_path), "x"))
    assert events[0] == TextEvent("Writing the fi")
    assert isinstance(events[1], ErrorEvent)
    assert "truncated" in events[1].message
    assert events[-1].success is False
    assert not any(isinstance(e, ToolUseEvent) for e in events)


def test_cancel_during_model_call_skips_returned_tools(tmp_path):
    harness = HttpHarness(MODEL_CONFIG)
    run = harness.run(_config(tmp_path), "x")
    harness.completion = FakeCompletion(_turn("Writing", [_write_call()]), on_call=run.cancel)
    events = list(run)
    assert events == []
    assert not (tmp_path / "app.py").exists()


def test_cancel_between_tool_calls(tmp_path):
    calls = [_write_call("a.py"), ToolCall(id="t2", name="file_write", input={"path": "b.py", "content": "b"})]
    completion = FakeCompletion(_turn("", calls), _turn("never"))
    run = HttpHarness(MODEL_CONFIG, completion=completion).run(_config(tmp_path), "x")
    for event in run:
        if isinstance(event, ToolResultEvent):
            run.cancel()
    assert (tmp_path / "a.py").exists()
    assert not (tmp_path / "b.py").exists()
    assert len(completion.calls) == 1


def test_timed_out_run_writes_nothing_after_deadline(tmp_path):
    release = threading.Event()
    completion = FakeCompletion(_turn("Writing", [_write_call()]), on_call=lambda: release.wait(5))
    run = HttpHarness(MODEL_CONFIG, completion=completion).run(_config(tmp_path), "x")

    with pytest.raises(HarnessTimeout):
        list(bounded_events(run, 0.1))

    # Let the in-flight request return after the deadline
    release.set()
    for thread in threading.enumerate():
        if thread.name == "harness-events":
            thread.join(timeout=5)
    assert not (tmp_path / "app.py").exists()
