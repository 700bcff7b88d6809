"""Git repository operations."""

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, NamedTuple, Optional, Sequence, Tuple

from git import Git, GitCommandNotFound, InvalidGitRepositoryError, NoSuchPathError, Repo
from git.cmd import handle_process_output
from git.compat import defenc

logger = logging.getLogger(__name__)

Sink = Callable[[str], None]

REMOTE = "origin"

# Git messages caused by ref-locking and network races.
TRANSIENT_ERROR_PATTERNS: Tuple[str, ...] = (
    r"cannot lock ref",
    r"unable to update local ref",
    r"refs/remotes/origin/",
    r"is at .* but expected",
    r"fatal: unable to access",
    r"fatal: the remote end hung up unexpectedly",
    r"fatal: early EOF",
    r"fatal: index-pack failed",
    r"fatal: pack-objects failed",
)

DEFAULT_BRANCH_METHODS: Tuple[Tuple[str, ...], ...] = (
    ("symbolic-ref", "refs/remotes/origin/HEAD"),
    ("rev-parse", "--abbrev-ref", "origin/HEAD"),
    ("config", "--get", "init.defaultBranch"),
)

BRANCH_PREFIXES = ("refs/heads/", "refs/remotes/", "origin/")

GONE_PATTERN = re.compile(r"origin/.*: gone\]")

STASH_MESSAGE = "git-cleanup: auto-stash before resetting worktree"


class GitError(Exception):
    """Git operation error."""

    def __init__(self, message: str, command: Optional[Sequence[str]] = None, status: Optional[int] = None) -> None:
        """Initialize error.

        Args:
            message: Error message, usually the trimmed output of the failed command
            command: Git arguments of the failed command, if any
            status: Exit status of the failed command, if it ran
        """
        super().__init__(message)
        self.command = list(command) if command else []
        self.status = status


@dataclass(frozen=True)
class RetryPolicy:
    """When and how often a failed git command is retried."""

    max_attempts: int = 3
    delay: float = 2.0
    transient_patterns: Tuple[str, ...] = TRANSIENT_ERROR_PATTERNS

    def is_transient(self, error: Optional[Exception]) -> bool:
        """Check whether a failure matches a known transient signature."""
        if error is None:
            return False
        message = str(error)
        return any(re.search(pattern, message) for pattern in self.transient_patterns)


class DeletedBranches(NamedTuple):
    """Local branches whose upstream is gone."""

    branches: list[str]
    worktree_branches: list[str]


class GitRunner:
    """Run git commands, retrying known transient failures."""

    def __init__(
        self,
        git: Git,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.git = git
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def execute(
        self,
        args: Sequence[str],
        sink: Optional[Sink] = None,
        retry: bool = True,
        stdout_only: bool = False,
    ) -> Tuple[str, Optional[GitError]]:
        """Run a git command and return its output and error.

        The output is the combined stdout and stderr, or stdout alone with
        ``stdout_only`` for commands whose output is parsed. The error message
        is always the combined output.

        The command is attempted up to ``policy.max_attempts`` times while its
        failure looks transient, pausing ``policy.delay`` seconds between
        attempts. The last attempt's result is returned either way.
        """
        attempts = self.policy.max_attempts if retry else 1
        output, error = "", None
        for attempt in range(1, attempts + 1):
            output, error = self._execute_once(args, sink, stdout_only)
            if not self.policy.is_transient(error):
                break
            if attempt < attempts:
                logger.info(
                    "Transient failure running git %s (attempt %d/%d), retrying in %ss",
                    " ".join(args),
                    attempt,
                    attempts,
                    self.policy.delay,
                )
                self._sleep(self.policy.delay)
        return output, error

    def run(self, *args: str, sink: Optional[Sink] = None, retry: bool = True, stdout_only: bool = False) -> str:
        """Run a git command and return its output, raising GitError on failure."""
        output, error = self.execute(args, sink=sink, retry=retry, stdout_only=stdout_only)
        if error is not None:
            raise error
        return output

    def _execute_once(
        self, args: Sequence[str], sink: Optional[Sink] = None, stdout_only: bool = False
    ) -> Tuple[str, Optional[GitError]]:
        """Run a git command once, streaming stdout and stderr lines to sink."""
        command = [self.git.GIT_PYTHON_GIT_EXECUTABLE, *args]
        logger.debug("Running: %s", " ".join(command))
        try:
            process = self.git.execute(command, as_process=True)
        except (GitCommandNotFound, OSError) as err:
            return "", GitError(f"Failed to run git {' '.join(args)}: {err}", command=args)

        lines: list[str] = []
        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        def collect(raw: bytes, stream: list[str]) -> None:
            # Ref names and messages are not guaranteed to be valid UTF-8
            line = raw.decode(defenc, "replace").rstrip("\r\n")
            lines.append(line)
            stream.append(line)
            if sink is not None and line.strip():
                sink(line)

        proc = process.proc
        try:
            handle_process_output(
                process,
                lambda raw: collect(raw, stdout_lines),
                lambda raw: collect(raw, stderr_lines),
                decode_streams=False,
            )
            status = proc.wait()
        finally:
            for stream in (proc.stdin, proc.stdout, proc.stderr):
                if stream is not None:
                    stream.close()

        combined = "\n".join(lines).strip()
        output = "\n".join(stdout_lines).strip() if stdout_only else combined
        if status != 0:
            message = combined or f"git {' '.join(args)} exited with status {status}"
            return output, GitError(message, command=args, status=status)
        return output, None


def strip_branch_prefixes(name: str) -> str:
    """Strip ref prefixes from a branch name, in order."""
    for prefix in BRANCH_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix) :]
    return name


def parse_deleted_branches(output: str) -> DeletedBranches:
    """Find branches with a gone upstream in ``git branch -vv`` output.

    The first two columns hold the marker: ``*`` for the current branch,
    ``+`` for a branch checked out in another worktree.
    """
    branches: list[str] = []
    worktree_branches: list[str] = []
    for line in output.splitlines():
        if not GONE_PATTERN.search(line):
            continue
        parts = line[2:].split()
        if not parts:
            continue
        name = parts[0]
        branches.append(name)
        if line.startswith("+"):
            worktree_branches.append(name)
    return DeletedBranches(branches, worktree_branches)


def parse_worktree_path(output: str, branch: str) -> str:
    """Find the worktree a branch is checked out in from porcelain output."""
    worktree_path = ""
    for line in output.splitlines():
        if line.startswith("worktree "):
            worktree_path = line[len("worktree ") :]
        elif line == f"branch refs/heads/{branch}" and worktree_path:
            return worktree_path
    raise GitError(f"worktree not found for branch {branch}")


def pool_branch_name(path: str, prefix: str = "") -> str:
    """Derive the pool branch of a worktree from its directory name."""
    name = Path(path).name
    if prefix and name.startswith(prefix):
        name = name[len(prefix) :]
    return name


class GitRepo:
    """Git repository operations."""

    def __init__(self, path: Path, runner: Optional[GitRunner] = None) -> None:
        """Initialize repository."""
        try:
            self.repo: Repo = Repo(path, search_parent_directories=True)
            if self.repo.bare:
                raise GitError("Cannot operate on bare repository")
        except (ValueError, InvalidGitRepositoryError, NoSuchPathError) as err:
            raise GitError(f"Failed to open repository: {err}") from err
        self.runner = runner or GitRunner(Git(path))

    def get_default_branch(self) -> str:
        """Resolve the default branch, trying each method until one succeeds."""
        for method in DEFAULT_BRANCH_METHODS:
            output, error = self.runner.execute(method, retry=False, stdout_only=True)
            if error is not None:
                logger.debug("git %s failed: %s", " ".join(method), error)
                continue
            result = strip_branch_prefixes(output.strip())
            # A detached origin/HEAD resolves to itself
            if result and result != "HEAD":
                return result
        raise GitError("failed to get default branch")

    def get_current_branch(self) -> str:
        """Get current branch name, empty when HEAD is detached."""
        try:
            return self.runner.run("branch", "--show-current", retry=False, stdout_only=True).strip()
        except GitError as err:
            raise GitError(f"failed to get current branch: {err}") from err

    def checkout(self, branch: str, sink: Optional[Sink] = None) -> None:
        self.runner.run("checkout", branch, sink=sink)

    def pull(self, branch: str, sink: Optional[Sink] = None) -> None:
        self.runner.run("pull", REMOTE, branch, sink=sink)

    def fetch_prune(self, sink: Optional[Sink] = None) -> None:
        self.runner.run("fetch", "-p", sink=sink)

    def delete_branch(self, branch: str, sink: Optional[Sink] = None) -> None:
        self.runner.run("branch", "-D", branch, sink=sink)

    def get_deleted_branches(self) -> DeletedBranches:
        """Get local branches whose upstream branch was deleted."""
        try:
            output = self.runner.run("branch", "-vv", stdout_only=True)
        except GitError as err:
            raise GitError(f"failed to get branch info: {err}") from err
        return parse_deleted_branches(output)

    def get_worktree_path(self, branch: str) -> str:
        """Get the path of the worktree the branch is checked out in."""
        try:
            output = self.runner.run("worktree", "list", "--porcelain", stdout_only=True)
        except GitError as err:
            raise GitError(f"failed to get worktree list: {err}") from err
        return parse_worktree_path(output, branch)

    def branch_exists(self, branch: str) -> bool:
        _, error = self.runner.execute(("show-ref", "--verify", "--quiet", f"refs/heads/{branch}"), retry=False)
        return error is None

    def has_uncommitted_changes(self, path: str) -> bool:
        """Check if a worktree has staged, unstaged or untracked changes."""
        return bool(self.runner.run("-C", path, "status", "--porcelain", retry=False, stdout_only=True).strip())

    def reset_worktree(
        self,
        default_branch: str,
        path: str,
        branch: str,
        prefix: str = "",
        sink: Optional[Sink] = None,
    ) -> str:
        """Move a worktree off a deleted branch onto its pool branch.

        This method will:
        1. Stash any uncommitted changes in the worktree
        2. Rebase the pool branch onto the remote default branch, or create
           it from there when it does not exist yet
        3. Pop the stash if there was one

        If step 2 fails the worktree is put back on the original branch and
        the stash is restored before the error is raised.

        Returns:
            The pool branch now checked out in the worktree.
        """
        pool_branch = pool_branch_name(path, prefix)
        upstream = f"{REMOTE}/{default_branch}"

        stashed = False
        if self.has_uncommitted_changes(path):
            self.runner.run("-C", path, "stash", "push", "--include-untracked", "-m", STASH_MESSAGE, sink=sink)
            stashed = True

        try:
            if self.branch_exists(pool_branch):
                self.runner.run("-C", path, "rebase", upstream, pool_branch, sink=sink)
            else:
                self.runner.run("-C", path, "checkout", "-b", pool_branch, upstream, sink=sink)
        except GitError:
            self._restore_worktree(path, branch, stashed, sink)
            raise

        if stashed:
            self.runner.run("-C", path, "stash", "pop", sink=sink)
        return pool_branch

    def _restore_worktree(self, path: str, branch: str, stashed: bool, sink: Optional[Sink] = None) -> None:
        """Put a worktree back the way reset_worktree found it."""
        git_dir, error = self.runner.execute(("-C", path, "rev-parse", "--absolute-git-dir"), retry=False, stdout_only=True)
        if error is not None:
            logger.warning("Could not inspect worktree %s: %s", path, error)
        elif (Path(git_dir) / "rebase-merge").exists() or (Path(git_dir) / "rebase-apply").exists():
            _, error = self.runner.execute(("-C", path, "rebase", "--abort"), sink=sink, retry=False)
            if error is not None:
                logger.warning("Could not abort rebase in %s: %s", path, error)

        _, error = self.runner.execute(("-C", path, "checkout", branch), sink=sink, retry=False)
        if error is not None:
            logger.warning("Could not check out %s in %s: %s", branch, path, error)

        if stashed:
            _, error = self.runner.execute(("-C", path, "stash", "pop"), sink=sink, retry=False)
            if error is not None:
                logger.warning("Could not restore stashed changes in %s, they remain in the stash: %s", path, error)
