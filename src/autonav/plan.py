"""Implementation plan and result types shared by the navigator, the
implementer and the memento loop.

Plans arrive as JSON from the navigator agent (camelCase keys) and are
validated here before anything acts on them. Nothing in this module is
persisted: git history is the only record that survives an iteration.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import cache

SUBMIT_PLAN_TOOL = "submit_implementation_plan"


class PlanParseError(Exception):
    """Raised when navigator output is not a well-formed implementation plan."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


@dataclass(frozen=True)
class ImplementationStep:
    description: str
    files: tuple[str, ...] | None = None
    commands: tuple[str, ...] | None = None


@dataclass(frozen=True)
class ImplementationPlan:
    summary: str
    steps: tuple[ImplementationStep, ...]
    validation_criteria: tuple[str, ...] = ()
    is_complete: bool = False
    completion_message: str | None = None


@dataclass(frozen=True)
class LoopContext:
    """What one agent invocation needs to know about the loop it serves."""
    code_directory: str
    nav_directory: str
    task: str
    iteration: int = 1
    max_iterations: int = 0
    branch: str | None = None
    promise: str = "IMPLEMENTATION COMPLETE"


@dataclass(frozen=True)
class AgentOptions:
    model: str
    max_turns: int = 50
    timeout: float | None = None


@dataclass
class ImplementerResult:
    success: bool
    summary: str
    files_modified: list[str] = field(default_factory=list)
    errors: list[str] | None = None
    duration_ms: int = 0
    tokens_used: int = 0
    last_tool: str | None = None


# The worker and implementer roles share one result shape.
WorkerResult = ImplementerResult


@dataclass
class MementoResult:
    success: bool
    iterations: int
    duration_ms: int
    completion_message: str | None = None
    pr_url: str | None = None
    branch: str | None = None
    errors: list[str] | None = None


def strip_code_fences(text: str) -> str:
    """Strip markdown code fences from LLM response."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text


def _embedded_objects(text: str):
    """Yield each top-level JSON object found in free text, left to right."""
    decoder = json.JSONDecoder()
    pos = text.find("{")
    while pos != -1:
        try:
            obj, end = decoder.raw_decode(text, pos)
        except json.JSONDecodeError:
            pos = text.find("{", pos + 1)
            continue
        if isinstance(obj, dict):
            yield obj
        pos = text.find("{", end)


def _string_list(value, field_name: str, raw_text: str) -> tuple[str, ...] | None:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PlanParseError(f"'{field_name}' must be a list of strings", raw_text)
    return tuple(value)


def _parse_step(data, index: int, raw_text: str) -> ImplementationStep:
    if not isinstance(data, dict):
        raise PlanParseError(f"steps[{index}] must be an object", raw_text)
    description = data.get("description")
    if not isinstance(description, str) or not description.strip():
        raise PlanParseError(f"steps[{index}].description must be a non-empty string", raw_text)
    return ImplementationStep(
        description=description,
        files=_string_list(data.get("files"), f"steps[{index}].files", raw_text),
        commands=_string_list(data.get("commands"), f"steps[{index}].commands", raw_text),
    )


def plan_from_dict(data, raw_text: str = "") -> ImplementationPlan:
    """Validate a decoded plan object. Raises PlanParseError."""
    if not raw_text:
        try:
            raw_text = json.dumps(data)
        except (TypeError, ValueError):
            raw_text = repr(data)
    if not isinstance(data, dict):
        raise PlanParseError("Plan must be a JSON object", raw_text)

    for key in ("summary", "steps", "isComplete"):
        if key not in data:
            raise PlanParseError(f"Plan is missing required field '{key}'", raw_text)

    summary = data["summary"]
    if not isinstance(summary, str):
        raise PlanParseError("'summary' must be a string", raw_text)

    steps = data["steps"]
    if not isinstance(steps, list):
        raise PlanParseError("'steps' must be a list", raw_text)

    is_complete = data["isComplete"]
    if not isinstance(is_complete, bool):
        raise PlanParseError("'isComplete' must be a boolean", raw_text)

    criteria = _string_list(data.get("validationCriteria"), "validationCriteria", raw_text)

    completion_message = data.get("completionMessage")
    if completion_message is not None and not isinstance(completion_message, str):
        raise PlanParseError("'completionMessage' must be a string", raw_text)

    return ImplementationPlan(
        summary=summary,
        steps=tuple(_parse_step(s, i, raw_text) for i, s in enumerate(steps)),
        validation_criteria=criteria or (),
        is_complete=is_complete,
        completion_message=completion_message,
    )


def parse_plan_text(text: str) -> ImplementationPlan:
    """Parse an agent's final reply into a plan.

    Accepts bare JSON, fenced JSON, or prose wrapped around the plan object.
    Stray braces in the prose are skipped. Raises PlanParseError carrying
    the original text.
    """
    if not text or not text.strip():
        raise PlanParseError("Navigator returned no plan text", text or "")

    candidate = strip_code_fences(text)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        objects = list(_embedded_objects(text))
        if not objects:
            raise PlanParseError("Navigator reply is not valid JSON", text)
        # Prose may quote other braces or JSON; the plan is the last object with a summary
        plans = [o for o in objects if "summary" in o]
        data = plans[-1] if plans else objects[-1]
    return plan_from_dict(data, raw_text=text)


def plan_to_dict(plan: ImplementationPlan) -> dict:
    """Inverse of plan_from_dict, using the camelCase wire keys."""
    steps = []
    for step in plan.steps:
        entry: dict = {"description": step.description}
        if step.files is not None:
            entry["files"] = list(step.files)
        if step.commands is not None:
            entry["commands"] = list(step.commands)
        steps.append(entry)
    data: dict = {
        "summary": plan.summary,
        "steps": steps,
        "validationCriteria": list(plan.validation_criteria),
        "isComplete": plan.is_complete,
    }
    if plan.completion_message is not None:
        data["completionMessage"] = plan.completion_message
    return data


@cache
def plan_tool_schema() -> dict:
    """Tool definition the navigator uses to submit its plan.

    Built once per process; the schema never changes at runtime.
    """
    string_list = {"type": "array", "items": {"type": "string"}}
    return {
        "name": SUBMIT_PLAN_TOOL,
        "description": (
            "Submit your implementation plan for the current iteration. "
            "You MUST use this tool to provide your plan. When the overall task "
            "is fully complete, set isComplete to true and provide a completionMessage."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "summary": {
                    "type": "string",
                    "description": "Brief summary of what this plan will accomplish in this iteration.",
                },
                "steps": {
                    "type": "array",
                    "description": "Ordered implementation steps. Each step should be atomic and verifiable.",
                    "items": {
                        "type": "object",
                        "properties": {
                            "description": {"type": "string", "description": "What this step accomplishes"},
                            "files": {**string_list, "description": "Files to create or modify (relative paths)"},
                            "commands": {**string_list, "description": "Shell commands to run"},
                        },
                        "required": ["description"],
                    },
                },
                "validationCriteria": {**string_list, "description": "How to verify the implementation worked"},
                "isComplete": {
                    "type": "boolean",
                    "description": "True only when the OVERALL task is complete and no more iterations are needed.",
                },
                "completionMessage": {
                    "type": "string",
                    "description": "Summary of what was accomplished, when isComplete is true.",
                },
            },
            "required": ["summary", "steps", "validationCriteria", "isComplete"],
        },
    }
