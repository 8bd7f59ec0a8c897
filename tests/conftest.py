import pytest

from autonav.events import ResultEvent, TextEvent, ToolUseEvent
from autonav.gitops import DiffStats
from autonav.harness import Harness


class ScriptedHarness(Harness):
    """Plays back one script per run() call.

    A script is a list of events; an Exception instance in the list is
    raised when the stream reaches it.
    """

    display_name = "scripted"
    write_tools = frozenset({"Write", "Edit"})

    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.calls = []

    def run(self, config, prompt):
        self.calls.append((config, prompt))
        script = self.scripts.pop(0)

        def _events():
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                yield item

        return _events()


class FakeGit:
    """In-memory stand-in for GitRepo."""

    def __init__(self, dirty=False, branch="main", gh=True):
        self.dirty = dirty
        self.branch = branch
        self.gh = gh
        self.commits = []
        self.branches_created = []
        self.pushed = []
        self.pull_requests = []
        self.fail_commit = False
        self.diff_text = "diff --git a/server.py b/server.py\n+x\n"
        self.staged = 0

    def ensure_repo(self):
        return False

    def has_uncommitted_changes(self):
        return self.dirty

    def current_branch(self):
        return self.branch

    def create_branch(self, name):
        self.branches_created.append(name)
        self.branch = name
        return True

    def recent_log(self, count=20):
        return "\n".join(f"{i:07x} {m.splitlines()[0]}" for i, m in reversed(list(enumerate(self.commits))))

    def commit(self, message):
        if self.fail_commit:
            from autonav.gitops import GitError
            raise GitError("git commit failed: nothing")
        if not self.dirty:
            return None
        self.commits.append(message)
        self.dirty = False
        return f"{len(self.commits):07x}"

    def stage_all(self):
        self.staged += 1

    def staged_diff(self):
        return self.diff_text if self.dirty else ""

    def last_commit_diff_stats(self):
        return DiffStats(files_changed=1, lines_added=3, lines_removed=1)

    def gh_available(self):
        return self.gh

    def push(self, branch):
        self.pushed.append(branch)

    def open_pull_request(self, branch, title, body, base="main"):
        self.pull_requests.append((branch, title, body))
        return "https://github.com/example/repo/pull/1"


def plan_script(plan: dict, text: str = "Plan submitted.") -> list:
    """Navigator run that submits `plan` through the plan tool."""
    return [
        ToolUseEvent(name="mcp__autonav__submit_implementation_plan", id="t1", input=plan),
        TextEvent(text),
        ResultEvent(success=True, text=text, input_tokens=100, output_tokens=20),
    ]


def impl_script(files=("server.py",), success=True, text="Done.") -> list:
    events = [
        ToolUseEvent(name="Write", id=f"w{i}", input={"file_path": f, "content": "x"})
        for i, f in enumerate(files)
    ]
    if success:
        events.append(ResultEvent(success=True, text=text))
    else:
        events.append(ResultEvent(success=False, errors=(text,)))
    return events


@pytest.fixture
def make_harness():
    return ScriptedHarness


@pytest.fixture
def fake_git():
    return FakeGit()
