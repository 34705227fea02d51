import shutil
import subprocess

import pytest

from devenv.core.errors import ExternalServiceError
from devenv.core.git import GitWorktrees

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(repo, *args):
    subprocess.run(
        ["git", "-C", str(repo), "-c", "user.name=devenv", "-c", "user.email=devenv@example.com", *args],
        check=True,
        capture_output=True,
    )


@pytest.fixture
def repo(tmp_path):
    path = tmp_path / "demo"
    path.mkdir()
    _git(path, "init", "-b", "main")
    (path / "README.md").write_text("demo\n")
    _git(path, "add", "README.md")
    _git(path, "commit", "-m", "init")
    _git(path, "branch", "existing")
    return path


def test_is_git_repository(repo, tmp_path):
    worktrees = GitWorktrees()
    assert worktrees.is_git_repository(repo) is True
    assert worktrees.is_git_repository(tmp_path) is False


def test_create_worktree_for_existing_and_new_branches(repo):
    worktrees = GitWorktrees()
    existing_path = repo / ".devenv" / "worktrees" / "existing"
    new_path = repo / ".devenv" / "worktrees" / "feature" / "x"

    assert worktrees.create_worktree(repo, "existing", existing_path) is True
    assert (existing_path / "README.md").exists()
    assert worktrees.create_worktree(repo, "feature/x", new_path) is True
    assert "feature/x" in worktrees.list_branches(repo)

    # Already checked out: nothing to do.
    assert worktrees.create_worktree(repo, "existing", existing_path) is False

    worktrees.remove_worktree(repo, new_path)
    assert not new_path.exists()


def test_failures_raise_external_error(tmp_path):
    worktrees = GitWorktrees()
    with pytest.raises(ExternalServiceError):
        worktrees.create_worktree(tmp_path, "main", tmp_path / "wt")
    with pytest.raises(ExternalServiceError):
        worktrees.remove_worktree(tmp_path, tmp_path / "missing")


def test_missing_git_binary_is_external_error(repo):
    with pytest.raises(ExternalServiceError) as exc_info:
        GitWorktrees(git_binary="definitely-not-git").list_branches(repo)
    assert exc_info.value.code == "git_unavailable"
