import pytest

from autonav.fileguard import FileGuard
from autonav.tools import (
    FILE_WRITE_TOOL_NAMES,
    MAX_COMMAND_OUTPUT,
    execute_file_tool,
    format_tool_operation,
    tools_for,
)


@pytest.fixture
def project(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / ".git").mkdir()
    return tmp_path


@pytest.fixture
def guard(project):
    return FileGuard(project)


# --- tool sets ---

def test_tools_for_writable_session(guard):
    names = [t["name"] for t in tools_for(guard)]
    assert names == ["file_read", "file_list", "file_write", "file_edit", "run_command"]
    assert FILE_WRITE_TOOL_NAMES <= set(names)


def test_tools_for_read_only_session(project):
    names = [t["name"] for t in tools_for(FileGuard(project, writable=False))]
    assert names == ["file_read", "file_list"]


# --- file_read ---

def test_read_existing_file(project, guard):
    (project / "src" / "main.py").write_text("print('hello')")
    assert execute_file_tool("file_read", {"path": "src/main.py"}, guard) == "print('hello')"


def test_read_missing_file(guard):
    assert execute_file_tool("file_read", {"path": "src/missing.py"}, guard).startswith("Error: file not found")


def test_read_directory(guard):
    assert execute_file_tool("file_read", {"path": "src"}, guard).startswith("Error: not a file")


def test_read_too_large(project):
    guard = FileGuard(project, max_file_size=10)
    (project / "big.txt").write_text("x" * 100)
    assert "too large" in execute_file_tool("file_read", {"path": "big.txt"}, guard)


def test_read_missing_path_field(guard):
    assert "missing 'path'" in execute_file_tool("file_read", {}, guard)


def test_read_security_error_is_returned(guard):
    assert execute_file_tool("file_read", {"path": "../x"}, guard).startswith("Error: Path traversal")


# --- file_list ---

def test_list_sorted_and_hides_git(project, guard):
    (project / "b.txt").write_text("")
    (project / "a.txt").write_text("")
    assert execute_file_tool("file_list", {"path": "."}, guard) == "a.txt\nb.txt\nsrc/"


def test_list_empty_directory(guard):
    assert execute_file_tool("file_list", {"path": "src"}, guard) == "(empty directory)"


def test_list_not_a_directory(project, guard):
    (project / "f.txt").write_text("")
    assert execute_file_tool("file_list", {"path": "f.txt"}, guard).startswith("Error: not a directory")


# --- file_write ---

def test_write_creates_parents(project, guard):
    result = execute_file_tool("file_write", {"path": "src/api/health.py", "content": "ok"}, guard)
    assert result == "Written: src/api/health.py (2 bytes)"
    assert (project / "src" / "api" / "health.py").read_text() == "ok"


def test_write_read_only_session(project):
    guard = FileGuard(project, writable=False)
    result = execute_file_tool("file_write", {"path": "a.py", "content": "x"}, guard)
    assert result == "Error: This session is read-only"
    assert not (project / "a.py").exists()


def test_write_git_dir_refused(guard):
    assert "Protected" in execute_file_tool("file_write", {"path": ".git/HEAD", "content": "x"}, guard)


def test_write_missing_content(guard):
    assert "missing 'content'" in execute_file_tool("file_write", {"path": "a.py"}, guard)


def test_write_content_too_large(project):
    guard = FileGuard(project, max_file_size=4)
    assert "too large" in execute_file_tool("file_write", {"path": "a.py", "content": "12345"}, guard)


# --- file_edit ---

def test_edit_replaces_unique_match(project, guard):
    (project / "app.py").write_text("a = 1\nb = 2\n")
    result = execute_file_tool("file_edit", {"path": "app.py", "old_string": "b = 2", "new_string": "b = 3"}, guard)
    assert result == "Edited: app.py"
    assert (project / "app.py").read_text() == "a = 1\nb = 3\n"


def test_edit_ambiguous_match(project, guard):
    (project / "app.py").write_text("x\nx\n")
    result = execute_file_tool("file_edit", {"path": "app.py", "old_string": "x", "new_string": "y"}, guard)
    assert "appears 2 times" in result
    assert (project / "app.py").read_text() == "x\nx\n"


def test_edit_no_match(project, guard):
    (project / "app.py").write_text("x\n")
    result = execute_file_tool("file_edit", {"path": "app.py", "old_string": "z", "new_string": "y"}, guard)
    assert "not found" in result


def test_edit_missing_file(guard):
    result = execute_file_tool("file_edit", {"path": "nope.py", "old_string": "a", "new_string": "b"}, guard)
    assert result.startswith("Error: file not found")


# --- run_command ---

def test_run_command_in_root(project, guard):
    (project / "marker.txt").write_text("")
    result = execute_file_tool("run_command", {"command": "ls"}, guard)
    assert result.startswith("exit code 0")
    assert "marker.txt" in result


def test_run_command_failure_exit_code(guard):
    assert execute_file_tool("run_command", {"command": "exit 3"}, guard).startswith("exit code 3")


def test_run_command_truncates_output(guard):
    result = execute_file_tool(
        "run_command", {"command": f"head -c {MAX_COMMAND_OUTPUT + 500} /dev/zero | tr '\\0' 'a'"}, guard,
    )
    assert result.endswith("[output truncated]")


def test_run_command_read_only(project):
    guard = FileGuard(project, writable=False)
    assert "read-only" in execute_file_tool("run_command", {"command": "ls"}, guard)


def test_unknown_tool(guard):
    assert execute_file_tool("file_delete", {"path": "a"}, guard) == "Error: unknown tool: file_delete"


# --- format_tool_operation ---

def test_format_tool_operation():
    assert format_tool_operation("run_command", {"command": "npm test"}) == "[run_command] npm test"
    assert format_tool_operation("file_write", {"path": "a.py", "content": "abc"}) == "[file_write] a.py (3 bytes)"
    assert format_tool_operation("Edit", {"file_path": "b.py"}) == "[Edit] b.py"
    assert format_tool_operation("Glob", {}) == "[Glob]"
