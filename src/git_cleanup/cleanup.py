"""Branch and worktree cleanup."""

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markup import escape

from git_cleanup.git import GitError, GitRepo
from git_cleanup.streamer import OutputStreamer

logger = logging.getLogger(__name__)


class CleanupError(GitError):
    """A setup step failed and the cleanup was aborted."""


def display_path(path: str) -> str:
    """Shorten a path under the home directory to ``~/...``."""
    return path.replace(str(Path.home()), "~", 1)


def _run_step(streamer: OutputStreamer, title: str, operation) -> None:
    """Run a setup step, aborting the cleanup if it fails."""
    error = streamer.run(title, operation)
    if error is not None:
        raise CleanupError(f"{title} failed: {error}") from error


def run_cleanup(
    repo: GitRepo,
    streamer: OutputStreamer,
    console: Optional[Console] = None,
    pool_prefix: str = "",
) -> None:
    """Update the default branch and remove branches whose upstream is gone.

    Setup steps abort the run with CleanupError. Failures on individual
    worktrees and branches are reported and the run moves on.
    """
    console = console or streamer.console

    try:
        default_branch = repo.get_default_branch()
    except GitError as err:
        raise CleanupError(f"failed to get default branch: {err}") from err

    current_branch = repo.get_current_branch()
    logger.debug("Default branch %s, current branch %s", default_branch, current_branch or "(detached)")

    if current_branch != default_branch:
        _run_step(streamer, "Checking out default branch", lambda sink: repo.checkout(default_branch, sink))
    _run_step(streamer, "Pulling latest changes", lambda sink: repo.pull(default_branch, sink))
    _run_step(streamer, "Pruning local branches", repo.fetch_prune)

    try:
        deleted = repo.get_deleted_branches()
    except GitError as err:
        raise CleanupError(f"error getting deleted branches: {err}") from err

    skipped: set[str] = set()
    for branch in deleted.worktree_branches:
        try:
            worktree_path = repo.get_worktree_path(branch)
        except GitError as err:
            console.print(f"[red]Error finding worktree for branch {escape(branch)}: {escape(str(err))}[/red]")
            skipped.add(branch)
            continue

        error = streamer.run(
            f"Resetting worktree: {display_path(worktree_path)}",
            lambda sink, path=worktree_path, branch=branch: repo.reset_worktree(
                default_branch, path, branch, pool_prefix, sink
            ),
        )
        if error is not None:
            skipped.add(branch)

    for branch in deleted.branches:
        if branch in skipped:
            logger.info("Keeping %s, its worktree was not reset", branch)
            continue
        streamer.run(f"Deleting branch: {branch}", lambda sink, branch=branch: repo.delete_branch(branch, sink))

    console.print("[green]✔ Git cleanup completed[/green]")
