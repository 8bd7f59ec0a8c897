from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

from autonav.claude_harness import CLAUDE_BIN
from autonav.config import NAV_PROMPT_FILE


class ValidationError(Exception):
    """Raised when arguments or directories fail pre-flight checks."""
    pass


@dataclass
class PreflightResult:
    code_directory: Path
    nav_directory: Path
    max_iterations: int


def parse_max_iterations(value) -> int:
    """Non-negative integer; 0 means unlimited."""
    if value is None:
        return 0
    text = str(value).strip()
    if not text.isdigit():
        raise ValidationError(
            f"--max-iterations must be a non-negative integer, got '{value}'"
        )
    return int(text)


def validate(code_directory: str, nav_directory: str, max_iterations=0) -> PreflightResult:
    code_dir = Path(code_directory).expanduser().resolve()
    nav_dir = Path(nav_directory).expanduser().resolve()

    if not code_dir.exists():
        raise ValidationError(f"Code directory not found: {code_dir}")
    if not code_dir.is_dir():
        raise ValidationError(f"Code directory is not a directory: {code_dir}")
    if not nav_dir.is_dir():
        raise ValidationError(f"Navigator directory not found: {nav_dir}")
    if not (nav_dir / NAV_PROMPT_FILE).is_file():
        raise ValidationError(
            f"Navigator {NAV_PROMPT_FILE} not found at: {nav_dir / NAV_PROMPT_FILE}"
        )

    return PreflightResult(
        code_directory=code_dir,
        nav_directory=nav_dir,
        max_iterations=parse_max_iterations(max_iterations),
    )


def check_harness_available(harness_type: str) -> None:
    if harness_type == "claude-code" and shutil.which(CLAUDE_BIN) is None:
        raise ValidationError(
            f"'{CLAUDE_BIN}' CLI not found on PATH. Install Claude Code or use --harness http."
        )


def check_pr_options(pr: bool, branch: str | None) -> None:
    """A pull request needs a working branch distinct from the base."""
    if pr and not branch:
        raise ValidationError("--pr requires --branch")
