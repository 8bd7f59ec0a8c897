import subprocess

from autonav.fileguard import FileGuard, SecurityError

COMMAND_TIMEOUT = 300
MAX_COMMAND_OUTPUT = 20_000


READ_TOOLS = [
    {
        "name": "file_read",
        "description": "Read a file's contents. Path is relative to the working directory.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative path (e.g., 'src/main.py'), or an absolute path inside an allowed directory",
                }
            },
            "required": ["path"],
        },
    },
    {
        "name": "file_list",
        "description": (
            "List files and directories at a path. "
            "Path is relative to the working directory. Use '.' for the root."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative path to directory (e.g., 'src/')",
                }
            },
            "required": ["path"],
        },
    },
]

WRITE_TOOLS = [
    {
        "name": "file_write",
        "description": (
            "Write content to a file. Creates parent directories if needed. "
            "Path is relative to the working directory."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative path (e.g., 'src/main.py')",
                },
                "content": {
                    "type": "string",
                    "description": "File content to write",
                },
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "file_edit",
        "description": (
            "Replace one exact occurrence of old_string with new_string in a file. "
            "old_string must appear exactly once."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Relative path"},
                "old_string": {"type": "string", "description": "Exact text to replace"},
                "new_string": {"type": "string", "description": "Replacement text"},
            },
            "required": ["path", "old_string", "new_string"],
        },
    },
    {
        "name": "run_command",
        "description": (
            "Run a shell command in the working directory and return its combined "
            "output and exit code. Use for builds and tests."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command line"},
            },
            "required": ["command"],
        },
    },
]

FILE_WRITE_TOOL_NAMES = frozenset({"file_write", "file_edit"})


def tools_for(fileguard: FileGuard) -> list[dict]:
    """Tool definitions offered for a session with this guard."""
    if fileguard.writable:
        return READ_TOOLS + WRITE_TOOLS
    return list(READ_TOOLS)


def execute_file_tool(tool_name: str, tool_input: dict, fileguard: FileGuard) -> str:
    """Execute a tool call. Always returns a string; never raises."""
    try:
        if tool_name == "file_read":
            return _do_file_read(tool_input, fileguard)
        elif tool_name == "file_list":
            return _do_file_list(tool_input, fileguard)
        elif tool_name == "file_write":
            return _do_file_write(tool_input, fileguard)
        elif tool_name == "file_edit":
            return _do_file_edit(tool_input, fileguard)
        elif tool_name == "run_command":
            return _do_run_command(tool_input, fileguard)
        else:
            return f"Error: unknown tool: {tool_name}"
    except SecurityError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Error: {e}"


def _do_file_read(tool_input: dict, fileguard: FileGuard) -> str:
    if "path" not in tool_input:
        return "Error: malformed tool call, missing 'path' field"
    path = fileguard.validate_read(tool_input["path"])
    if not path.exists():
        return f"Error: file not found: {tool_input['path']}"
    if not path.is_file():
        return f"Error: not a file: {tool_input['path']}"
    size = path.stat().st_size
    if size > fileguard.max_file_size:
        return f"Error: file too large ({size} bytes, limit {fileguard.max_file_size})"
    return path.read_text()


def _do_file_list(tool_input: dict, fileguard: FileGuard) -> str:
    path = fileguard.validate_read(tool_input.get("path", "."))
    if not path.exists():
        return f"Error: directory not found: {tool_input.get('path')}"
    if not path.is_dir():
        return f"Error: not a directory: {tool_input.get('path')}"
    entries = sorted(path.iterdir(), key=lambda e: e.name)
    lines = []
    for entry in entries:
        if entry.name == ".git":
            continue
        suffix = "/" if entry.is_dir() else ""
        lines.append(f"{entry.name}{suffix}")
    return "\n".join(lines) if lines else "(empty directory)"


def _do_file_write(tool_input: dict, fileguard: FileGuard) -> str:
    if "path" not in tool_input:
        return "Error: malformed tool call, missing 'path' field"
    if "content" not in tool_input:
        return "Error: malformed tool call, missing 'content' field"
    content = tool_input["content"]
    size = len(content.encode())
    if size > fileguard.max_file_size:
        return f"Error: content too large ({size} bytes, limit {fileguard.max_file_size})"
    path = fileguard.validate_write(tool_input["path"])
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return f"Written: {tool_input['path']} ({size} bytes)"


def _do_file_edit(tool_input: dict, fileguard: FileGuard) -> str:
    for key in ("path", "old_string", "new_string"):
        if key not in tool_input:
            return f"Error: malformed tool call, missing '{key}' field"
    path = fileguard.validate_write(tool_input["path"])
    if not path.is_file():
        return f"Error: file not found: {tool_input['path']}"
    original = path.read_text()
    old = tool_input["old_string"]
    count = original.count(old) if old else 0
    if count == 0:
        return f"Error: old_string not found in {tool_input['path']}"
    if count > 1:
        return f"Error: old_string appears {count} times in {tool_input['path']}; add more context"
    path.write_text(original.replace(old, tool_input["new_string"], 1))
    return f"Edited: {tool_input['path']}"


def _do_run_command(tool_input: dict, fileguard: FileGuard) -> str:
    if not fileguard.writable:
        return "Error: commands are not allowed in a read-only session"
    command = tool_input.get("command")
    if not command:
        return "Error: malformed tool call, missing 'command' field"
    try:
        proc = subprocess.run(
            command, shell=True, cwd=fileguard.root,
            capture_output=True, text=True, timeout=COMMAND_TIMEOUT,
        )
    except subprocess.TimeoutExpired:
        return f"Error: command timed out after {COMMAND_TIMEOUT}s"
    output = (proc.stdout or "") + (proc.stderr or "")
    if len(output) > MAX_COMMAND_OUTPUT:
        output = output[:MAX_COMMAND_OUTPUT] + "\n[output truncated]"
    return f"exit code {proc.returncode}\n{output}".rstrip()


def format_tool_operation(name: str, tool_input: dict) -> str:
    """One-line description of a tool call for verbose output."""
    if name == "run_command":
        return f"[run_command] {tool_input.get('command', '')}"
    path = tool_input.get("path") or tool_input.get("file_path") or ""
    if name == "file_write":
        size = len(tool_input.get("content", "").encode())
        return f"[file_write] {path} ({size} bytes)"
    return f"[{name}] {path}".rstrip()
