"""Command line interface for git-cleanup."""

import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape

from git_cleanup.cleanup import run_cleanup
from git_cleanup.git import GitError, GitRepo
from git_cleanup.streamer import OutputStreamer

app = typer.Typer(help="Clean up branches and worktrees whose upstream was deleted")
console = Console()
err_console = Console(stderr=True)


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    # basicConfig does nothing once the root logger has handlers
    logging.getLogger("git_cleanup").setLevel(level)


def get_repo(path: Path) -> GitRepo:
    """Get git repository instance."""
    try:
        return GitRepo(path)
    except GitError as err:
        err_console.print(f"[red]Error:[/red] {escape(str(err))}")
        raise typer.Exit(code=1) from err


@app.command()
def cleanup(
    cwd: Annotated[Optional[Path], typer.Option("--cwd", help="Run git in this directory")] = None,
    pool_prefix: Annotated[
        str, typer.Option("--pool-prefix", help="Prefix stripped from worktree directory names to get their pool branch")
    ] = "",
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log every git command")] = False,
) -> None:
    """Update the default branch and clean up branches whose upstream is gone."""
    configure_logging(verbose)
    repo = get_repo(cwd or Path("."))

    try:
        run_cleanup(repo, OutputStreamer(console), console, pool_prefix=pool_prefix)
    except GitError as err:
        err_console.print(f"[red]Error:[/red] {escape(str(err))}")
        raise typer.Exit(code=1) from err


if __name__ == "__main__":
    app()
