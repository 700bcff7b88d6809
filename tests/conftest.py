"""Test configuration and fixtures."""

from pathlib import Path
from typing import Generator

import pytest
from git import Actor, Repo


@pytest.fixture
def test_env(tmp_path: Path) -> Generator[tuple[Path, Path], None, None]:
    """Create a test environment with local and remote repositories.

    The local repository has:
    - feature/kept: upstream still exists
    - feature/gone: upstream deleted, currently checked out
    - feature/worktree: upstream deleted, checked out in the worktree ``pool-1``

    Returns:
        Tuple of (local_repo_path, remote_repo_path)
    """
    remote_path = tmp_path / "remote"
    local_path = tmp_path / "local"
    remote_path.mkdir()
    local_path.mkdir()

    Repo.init(remote_path, bare=True)
    local_repo = Repo.init(local_path)

    author = Actor("Test User", "test@example.com")
    local_repo.config_writer().set_value("user", "name", author.name).release()
    local_repo.config_writer().set_value("user", "email", author.email).release()

    readme = local_path / "README.md"
    readme.write_text("# Test Repository")
    local_repo.index.add(["README.md"])
    local_repo.index.commit("Initial commit", author=author)

    if "main" not in local_repo.heads:
        local_repo.create_head("main")
    main_branch = local_repo.heads.main
    main_branch.checkout()

    origin = local_repo.create_remote("origin", url=str(remote_path))
    origin.push("main")
    main_branch.set_tracking_branch(origin.refs.main)
    local_repo.git.remote("set-head", "origin", "main")

    def create_branch(name: str) -> None:
        """Create a branch with one commit and push it."""
        main_branch.checkout()
        branch = local_repo.create_head(name)
        branch.checkout()

        test_file = local_path / f"{name}.txt"
        test_file.parent.mkdir(parents=True, exist_ok=True)
        test_file.write_text(f"{name} content")
        local_repo.index.add([f"{name}.txt"])
        local_repo.index.commit(f"Add {name}", author=author)

        origin.push(name)
        branch.set_tracking_branch(origin.refs[name])

    create_branch("feature/kept")
    create_branch("feature/gone")
    create_branch("feature/worktree")

    main_branch.checkout()
    local_repo.git.worktree("add", str(tmp_path / "pool-1"), "feature/worktree")

    origin.push(":feature/gone")
    origin.push(":feature/worktree")

    local_repo.heads["feature/gone"].checkout()

    yield local_path, remote_path


@pytest.fixture
def worktree_path(test_env: tuple[Path, Path]) -> Path:
    """Path of the worktree that has feature/worktree checked out."""
    local_path, _ = test_env
    return local_path.parent / "pool-1"


@pytest.fixture
def plain_repo(tmp_path: Path) -> Path:
    """An empty repository, for tests that fake every git command."""
    Repo.init(tmp_path)
    return tmp_path
