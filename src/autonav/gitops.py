from __future__ import annotations

import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path


class GitError(Exception):
    """Raised when a git or gh command fails."""
    pass


class FinalizationError(Exception):
    """Raised when the branch cannot be pushed or the pull request opened."""
    pass


@dataclass
class DiffStats:
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0


_FILES_RE = re.compile(r"(\d+) files? changed")
_INSERTIONS_RE = re.compile(r"(\d+) insertions?\(\+\)")
_DELETIONS_RE = re.compile(r"(\d+) deletions?\(-\)")


def parse_shortstat(output: str) -> DiffStats:
    """Parse `git diff --shortstat` output.

    " 3 files changed, 10 insertions(+), 5 deletions(-)" → DiffStats(3, 10, 5)
    """
    def _num(pattern: re.Pattern) -> int:
        m = pattern.search(output)
        return int(m.group(1)) if m else 0

    return DiffStats(
        files_changed=_num(_FILES_RE),
        lines_added=_num(_INSERTIONS_RE),
        lines_removed=_num(_DELETIONS_RE),
    )


class GitRepo:
    """Git and GitHub CLI operations on one working tree."""

    def __init__(self, cwd: Path | str):
        self.cwd = Path(cwd)

    def _git(self, *args: str) -> str:
        """Run a git command in the working tree. Raises GitError on failure."""
        return self._run("git", *args)

    def _run(self, *cmd: str) -> str:
        try:
            result = subprocess.run(
                list(cmd),
                cwd=self.cwd,
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            raise GitError(
                f"{' '.join(cmd[:3])} failed: {(e.stderr or e.stdout or '').strip() or e}"
            )
        except FileNotFoundError:
            raise GitError(f"'{cmd[0]}' is not installed")
        return result.stdout.strip()

    def _succeeds(self, *args: str) -> bool:
        result = subprocess.run(
            ["git", *args],
            cwd=self.cwd,
            capture_output=True,
            text=True,
        )
        return result.returncode == 0

    # --- Queries ---

    def is_repo(self) -> bool:
        return self._succeeds("rev-parse", "--is-inside-work-tree")

    def has_commits(self) -> bool:
        return self._succeeds("rev-parse", "--verify", "HEAD")

    def current_branch(self) -> str:
        """Current branch name, or "HEAD" when detached."""
        try:
            return self._git("branch", "--show-current") or "HEAD"
        except GitError:
            return "HEAD"

    def branch_exists(self, name: str) -> bool:
        return self._succeeds("rev-parse", "--verify", "--quiet", f"refs/heads/{name}")

    def recent_log(self, count: int = 20) -> str:
        """One-line log of the last `count` commits; empty before the first commit."""
        if not self.has_commits():
            return ""
        return self._git("log", "--oneline", "--no-decorate", "-n", str(count))

    def staged_diff(self) -> str:
        return self._git("diff", "--cached")

    def has_uncommitted_changes(self) -> bool:
        return bool(self._git("status", "--porcelain"))

    def last_commit_diff_stats(self) -> DiffStats:
        """Stats of HEAD against its parent (or the empty tree for a root commit)."""
        if self._succeeds("rev-parse", "--verify", "HEAD~1"):
            return parse_shortstat(self._git("diff", "--shortstat", "HEAD~1", "HEAD"))
        if self.has_commits():
            empty_tree = self._git("hash-object", "-t", "tree", "/dev/null")
            return parse_shortstat(self._git("diff", "--shortstat", empty_tree, "HEAD"))
        return DiffStats()

    # --- Mutations ---

    def ensure_repo(self) -> bool:
        """Initialise a repository if needed. Returns True if one was created."""
        if self.is_repo():
            return False
        self._git("init")
        return True

    def stage_all(self) -> None:
        self._git("add", "-A")

    def create_branch(self, name: str) -> bool:
        """Switch to `name`, creating it first if needed. Returns True if created."""
        if self.branch_exists(name):
            self._git("checkout", name)
            return False
        self._git("checkout", "-b", name)
        return True

    def commit(self, message: str) -> str | None:
        """Stage everything and commit. Returns the short hash, or None if clean."""
        if not self.has_uncommitted_changes():
            return None
        self._git("add", "-A")
        self._git("commit", "-m", message)
        return self._git("rev-parse", "--short", "HEAD")

    def push(self, branch: str) -> None:
        self._git("push", "-u", "origin", branch)

    def gh_available(self) -> bool:
        if shutil.which("gh") is None:
            return False
        result = subprocess.run(
            ["gh", "auth", "status"],
            cwd=self.cwd,
            capture_output=True,
            text=True,
        )
        return result.returncode == 0

    def open_pull_request(self, branch: str, title: str, body: str, base: str = "main") -> str:
        """Open a pull request with gh. Returns its URL (last line of gh output)."""
        output = self._run(
            "gh", "pr", "create",
            "--title", title,
            "--body", body,
            "--base", base,
            "--head", branch,
        )
        lines = [line for line in output.splitlines() if line.strip()]
        return lines[-1] if lines else output


def publish_branch(repo: GitRepo, branch: str | None, title: str, body: str, base: str = "main") -> str:
    """Push the working branch and open a pull request against `base`.

    Raises FinalizationError when gh is unavailable, no branch is checked
    out, the branch is the base itself, or any git/gh step fails. Returns
    the pull request URL.
    """
    if not branch or branch == "HEAD":
        raise FinalizationError("Cannot open a pull request without a named branch")
    if branch == base:
        raise FinalizationError(
            f"Working branch '{branch}' is the pull request base; use --branch to work on a separate branch"
        )
    if not repo.gh_available():
        raise FinalizationError(
            "GitHub CLI (gh) is not installed or not authenticated; skipping pull request"
        )
    try:
        repo.push(branch)
        return repo.open_pull_request(branch, title, body, base=base)
    except GitError as e:
        raise FinalizationError(str(e))
