from __future__ import annotations

import tomllib
from importlib import resources

from autonav.plan import ImplementationPlan


def _load_builtin() -> dict:
    """Load builtin prompt templates via importlib.resources (wheel-safe)."""
    ref = resources.files("autonav.data").joinpath("prompts.toml")
    with resources.as_file(ref) as path:
        with open(path, "rb") as f:
            return tomllib.load(f)


_DEFAULTS = _load_builtin()

IDENTITY_CALLER: str = _DEFAULTS["identity"]["caller"]
IDENTITY_REQUEST: str = _DEFAULTS["identity"]["request"]
IDENTITY_PROTOCOL: str = _DEFAULTS["identity"]["protocol"]
NAV_SYSTEM_TEMPLATE: str = _DEFAULTS["navigator"]["system"]
NAV_PLAN_TEMPLATE: str = _DEFAULTS["navigator"]["plan"]
IMPLEMENTER_SYSTEM_TEMPLATE: str = _DEFAULTS["implementer"]["system"]
IMPLEMENTER_TASK_TEMPLATE: str = _DEFAULTS["implementer"]["task"]
REVIEW_SYSTEM_PROMPT: str = _DEFAULTS["review"]["system"]
REVIEW_HISTORY_TEMPLATE: str = _DEFAULTS["review"]["history"]
REVIEW_TASK_TEMPLATE: str = _DEFAULTS["review"]["task"]
FIXER_SYSTEM_TEMPLATE: str = _DEFAULTS["fixer"]["system"]
FIXER_HISTORY_TEMPLATE: str = _DEFAULTS["fixer"]["history"]
FIXER_TASK_TEMPLATE: str = _DEFAULTS["fixer"]["task"]
COMMIT_SYSTEM_PROMPT: str = _DEFAULTS["commit"]["system"]
COMMIT_TASK_TEMPLATE: str = _DEFAULTS["commit"]["task"]

DEFAULT_PROMISE = "IMPLEMENTATION COMPLETE"
NO_COMMITS = "(No commits yet)"
REVIEW_DIFF_LIMIT = 8000
COMMIT_DIFF_LIMIT = 4000


def build_identity_protocol(identity: dict | None) -> str:
    """Identity header addressed to the navigator; empty without an identity."""
    if not identity or not identity.get("name"):
        return ""
    return IDENTITY_PROTOCOL.format(
        name=identity["name"],
        description=identity.get("description", ""),
        caller=IDENTITY_CALLER,
        request=IDENTITY_REQUEST,
    )


def build_nav_system_prompt(nav_system_prompt: str) -> str:
    return NAV_SYSTEM_TEMPLATE.format(nav_system_prompt=nav_system_prompt.rstrip())


def build_nav_plan_prompt(
    task: str,
    code_directory: str,
    iteration: int,
    max_iterations: int,
    git_log: str,
    branch: str | None = None,
    promise: str = DEFAULT_PROMISE,
    identity: dict | None = None,
) -> str:
    if max_iterations > 0:
        iteration_info = f"Iteration {iteration} of {max_iterations}"
    else:
        iteration_info = f"Iteration {iteration}"
    return NAV_PLAN_TEMPLATE.format(
        identity=build_identity_protocol(identity),
        task=task,
        iteration_info=iteration_info,
        code_directory=code_directory,
        branch=branch or "(default branch)",
        git_log=git_log or NO_COMMITS,
        promise=promise,
    )


def build_implementer_system_prompt(code_directory: str) -> str:
    return IMPLEMENTER_SYSTEM_TEMPLATE.format(code_directory=code_directory)


def _format_steps(plan: ImplementationPlan) -> str:
    blocks = []
    for i, step in enumerate(plan.steps, 1):
        lines = [f"### Step {i}: {step.description}"]
        if step.files:
            lines.append(f"- Files: {', '.join(step.files)}")
        if step.commands:
            lines.append(f"- Commands: {', '.join(step.commands)}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) if blocks else "(No steps given; follow the summary.)"


def build_implementer_prompt(code_directory: str, plan: ImplementationPlan) -> str:
    validation = ""
    if plan.validation_criteria:
        criteria = "\n".join(f"- {c}" for c in plan.validation_criteria)
        validation = f"\n## Validation Criteria\n\n{criteria}\n"
    return IMPLEMENTER_TASK_TEMPLATE.format(
        summary=plan.summary,
        steps=_format_steps(plan),
        validation=validation,
        code_directory=code_directory,
    )


def truncate_diff(diff: str, limit: int) -> str:
    if len(diff) <= limit:
        return diff
    return diff[:limit] + "\n... (truncated)"


def _format_review_history(history) -> str:
    """history: ReviewRecord-like objects with round, issues and fix_summary."""
    blocks = []
    for record in history:
        fixed = f"Fix applied: {record.fix_summary}" if record.fix_summary else "(fix pending)"
        blocks.append(f"### Round {record.round}\nIssues flagged:\n{record.issues}\n{fixed}")
    return "\n\n".join(blocks)


def build_review_prompt(diff: str, history=()) -> str:
    section = ""
    if history:
        section = REVIEW_HISTORY_TEMPLATE.format(rounds=_format_review_history(history))
    return REVIEW_TASK_TEMPLATE.format(
        history=section,
        diff=truncate_diff(diff, REVIEW_DIFF_LIMIT),
    )


def build_fixer_system_prompt(code_directory: str) -> str:
    return FIXER_SYSTEM_TEMPLATE.format(code_directory=code_directory)


def build_fixer_prompt(code_directory: str, review: str, history=()) -> str:
    section = ""
    if history:
        section = FIXER_HISTORY_TEMPLATE.format(rounds=_format_review_history(history))
    return FIXER_TASK_TEMPLATE.format(
        history=section,
        review=review.strip(),
        code_directory=code_directory,
    )


def build_commit_message_prompt(diff: str) -> str:
    return COMMIT_TASK_TEMPLATE.format(diff=truncate_diff(diff, COMMIT_DIFF_LIMIT))
