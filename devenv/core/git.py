from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass
class GitResult:
    command: str
    returncode: int
    output: str


class GitWorktrees:
    """Worktree gateway around the git CLI. Blocking."""

    def __init__(self, git_binary: str = "git"):
        self.git_binary = git_binary

    def is_git_repository(self, repo_path: str | Path) -> bool:
        return (Path(repo_path) / ".git").exists()

    def create_worktree(self, repo_path: str | Path, branch: str, worktree_path: str | Path) -> bool:
        """Check out ``branch`` at ``worktree_path``; returns False if it already exists."""
        if Path(worktree_path).exists():
            return False

        Path(worktree_path).parent.mkdir(parents=True, exist_ok=True)
        existing = self._run(repo_path, "worktree", "add", str(worktree_path), branch)
        if existing.returncode == 0:
            logger.info("Checked out existing branch %s at %s", branch, worktree_path)
            return True

        # Branch does not exist yet.
        created = self._run(repo_path, "worktree", "add", "-b", branch, str(worktree_path))
        if created.returncode != 0:
            raise ExternalServiceError(
                f"Failed to create worktree: {created.output}",
                code="worktree_create_failed",
            )
        logger.info("Created branch %s in new worktree %s", branch, worktree_path)
        return True

    def remove_worktree(self, repo_path: str | Path, worktree_path: str | Path) -> None:
        result = self._run(repo_path, "worktree", "remove", str(worktree_path), "--force")
        if result.returncode != 0:
            raise ExternalServiceError(
                f"Failed to remove worktree: {result.output}",
                code="worktree_remove_failed",
            )

    def list_branches(self, repo_path: str | Path) -> list[str]:
        result = self._run(repo_path, "branch", "--format=%(refname:short)")
        if result.returncode != 0:
            raise ExternalServiceError(
                f"Failed to list branches: {result.output}",
                code="git_branch_list_failed",
            )
        return [line for line in result.output.splitlines() if line]

    def _run(self, repo_path: str | Path, *args: str) -> GitResult:
        command = [self.git_binary, "-C", str(repo_path), *args]
        try:
            completed = subprocess.run(command, check=False, capture_output=True, text=True)
        except OSError as error:
            raise ExternalServiceError(f"Failed to run git: {error}", code="git_unavailable") from error
        output = (completed.stdout or "") + (completed.stderr or "")
        return GitResult(command=" ".join(command), returncode=completed.returncode, output=output.strip())
