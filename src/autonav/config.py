from __future__ import annotations

import json
import os
from pathlib import Path

from autonav.harness import DEFAULT_HARNESS, HARNESS_TYPES

NAV_PROMPT_FILE = "CLAUDE.md"
NAV_CONFIG_FILE = "config.json"
TASK_FILE = "TASK.md"

DEFAULT_TASK = "Please give me the next unit of work"
DEFAULT_IMPLEMENTER_MODEL = "claude-haiku-4-5"
DEFAULT_NAV_MODEL = "claude-opus-4-5"
DEFAULT_MAX_TURNS = 50
DEFAULT_RATE_LIMIT_RETRIES = 3

HARNESS_ENV_VAR = "AUTONAV_HARNESS"

DEFAULT_HTTP_MODEL = {
    "provider": "anthropic",
    "base_url": "https://api.anthropic.com",
    "api_key": "$ANTHROPIC_API_KEY",
}


class ConfigError(Exception):
    """Raised when navigator or harness configuration is invalid."""
    pass


def read_dotenv(dotenv_path: Path) -> dict[str, str]:
    """Read a .env file and return key=value pairs as a dict."""
    env = {}
    if not dotenv_path.exists():
        return env
    for line in dotenv_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        # Strip surrounding quotes
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        env[key] = value
    return env


def load_nav_config(nav_dir: Path) -> dict:
    """Navigator config.json, or {} when the navigator has none."""
    path = nav_dir / NAV_CONFIG_FILE
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return data


def nav_identity(nav_config: dict) -> dict | None:
    """Name and description used in the identity protocol, if configured."""
    name = nav_config.get("name")
    if not name:
        return None
    return {"name": name, "description": nav_config.get("description", "")}


def load_nav_system_prompt(nav_dir: Path) -> str:
    path = nav_dir / NAV_PROMPT_FILE
    if not path.exists():
        raise ConfigError(f"Navigator is missing {NAV_PROMPT_FILE}: {path}")
    return path.read_text()


def resolve_harness_type(
    flag: str | None = None,
    nav_config: dict | None = None,
    environ: dict | None = None,
) -> str:
    """Pick the harness: --harness flag, then AUTONAV_HARNESS, then
    config.json harness.type, then the default."""
    env = os.environ if environ is None else environ
    harness_block = (nav_config or {}).get("harness") or {}
    candidates = (
        (flag, "--harness"),
        (env.get(HARNESS_ENV_VAR), HARNESS_ENV_VAR),
        (harness_block.get("type"), f"{NAV_CONFIG_FILE} harness.type"),
    )
    for value, source in candidates:
        if not value:
            continue
        if value not in HARNESS_TYPES:
            raise ConfigError(
                f'Invalid harness type "{value}" (from {source}). '
                f"Valid types: {', '.join(HARNESS_TYPES)}"
            )
        return value
    return DEFAULT_HARNESS


def load_model_config(nav_dir: Path, nav_config: dict) -> dict:
    """HTTP harness model block with its api_key resolved.

    An api_key of the form "$VAR" is read from the navigator's .env first,
    then the environment.
    """
    config = dict(DEFAULT_HTTP_MODEL)
    config.update(nav_config.get("model") or {})
    api_key = config.get("api_key")
    if api_key and api_key.startswith("$"):
        env_var = api_key[1:]
        dotenv_vars = read_dotenv(nav_dir / ".env")
        resolved = dotenv_vars.get(env_var) or os.environ.get(env_var)
        config["api_key"] = resolved
        if not config["api_key"] and config.get("provider") != "ollama":
            raise ConfigError(
                f"Environment variable {env_var} is not set "
                f"(referenced by the model api_key in {NAV_CONFIG_FILE}). "
                f"Add it to the navigator's .env or export it in your shell."
            )
    return config


def resolve_task(task: str | None, code_dir: Path) -> str:
    """--task, else the trimmed contents of TASK.md, else the default task."""
    if task and task.strip():
        return task.strip()
    task_file = code_dir / TASK_FILE
    if task_file.is_file():
        content = task_file.read_text().strip()
        if content:
            return content
    return DEFAULT_TASK
