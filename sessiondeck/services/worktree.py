import hashlib
import logging
import re
import shutil
from pathlib import Path

import git as gitpython
from pydantic import BaseModel

from sessiondeck.models import CleanupResult

logger = logging.getLogger(__name__)

_UNSAFE_BRANCH_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


class WorktreeError(Exception):
    """Raised when a worktree cannot be created."""


class BranchNotFoundError(WorktreeError):
    def __init__(self, branch: str) -> None:
        self.branch = branch
        super().__init__(f"Branch '{branch}' does not exist")


class WorktreeInfo(BaseModel):
    path: str
    branch: str = ""
    head: str = ""
    is_main: bool = False
    is_locked: bool = False
    is_prunable: bool = False


def safe_branch_name(branch: str) -> str:
    return _UNSAFE_BRANCH_CHARS.sub("_", branch)


def worktree_path_for(base_dir: Path, repo_path: str, branch: str) -> Path:
    """Deterministic worktree location, so the same branch of a repo always reuses it."""
    digest = hashlib.sha256(f"{repo_path}:{branch}".encode()).hexdigest()[:16]
    return base_dir / f"{safe_branch_name(branch)}-{digest}"


def parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """Parse `git worktree list --porcelain` output."""
    worktrees: list[WorktreeInfo] = []
    current: WorktreeInfo | None = None
    for line in output.splitlines():
        if line.startswith("worktree "):
            if current is not None:
                worktrees.append(current)
            current = WorktreeInfo(path=line[len("worktree "):])
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD "):]
        elif line.startswith("branch "):
            current.branch = line[len("branch "):].removeprefix("refs/heads/")
        elif line == "bare":
            current.is_main = True
        elif line.startswith("locked"):
            current.is_locked = True
        elif line.startswith("prunable"):
            current.is_prunable = True
        elif line.startswith("detached"):
            current.branch = "detached"

    # Output may not end with a blank line
    if current is not None:
        worktrees.append(current)

    if worktrees and not any(wt.is_main for wt in worktrees):
        worktrees[0].is_main = True
    return worktrees


class WorktreeProvisioner:
    """Creates, reuses and removes git worktrees. All methods block; call them off the event loop."""

    def current_branch(self, repo_path: str) -> str:
        repo = gitpython.Repo(repo_path)
        return repo.git.rev_parse("--abbrev-ref", "HEAD").strip()

    def branch_exists(self, repo_path: str, branch: str) -> bool:
        """True if the branch exists locally or on any remote."""
        repo = gitpython.Repo(repo_path)
        try:
            repo.git.rev_parse("--verify", branch)
            return True
        except gitpython.GitCommandError:
            pass
        try:
            return bool(repo.git.branch("-r", "--list", f"*/{branch}").strip())
        except gitpython.GitCommandError:
            return False

    def list_worktrees(self, repo_path: str) -> list[WorktreeInfo]:
        repo = gitpython.Repo(repo_path)
        return parse_worktree_list(repo.git.worktree("list", "--porcelain"))

    def prepare(self, repo_path: str, branch: str, wt_path: Path) -> Path:
        """Create a worktree for `branch` at `wt_path`, reusing a valid existing one.

        Raises BranchNotFoundError if the branch exists neither locally nor remotely,
        WorktreeError if git refuses to create the worktree.
        """
        repo = gitpython.Repo(repo_path)
        wt_path.parent.mkdir(parents=True, exist_ok=True)

        existing = {wt.path for wt in self.list_worktrees(repo_path)}
        if str(wt_path) in existing:
            if wt_path.exists():
                logger.info("Reusing existing worktree", extra={"path": str(wt_path), "branch": branch})
                return wt_path
            repo.git.worktree("prune")

        if not self.branch_exists(repo_path, branch):
            raise BranchNotFoundError(branch)

        try:
            repo.git.worktree("add", str(wt_path), branch)
        except gitpython.GitCommandError as e:
            stderr = str(e.stderr or e)
            if "already checked out" not in stderr and "already used by worktree" not in stderr:
                raise WorktreeError(f"Failed to create worktree: {stderr}") from e
            try:
                repo.git.worktree("add", "--detach", str(wt_path), branch)
            except gitpython.GitCommandError as e2:
                raise WorktreeError(f"Failed to create worktree: {e2.stderr or e2}") from e2

        logger.info("Created worktree", extra={"path": str(wt_path), "branch": branch})
        return wt_path

    def cleanup(self, repo_path: str, wt_path: str) -> CleanupResult:
        """Remove a worktree, falling back to deleting the directory and pruning."""
        try:
            repo = gitpython.Repo(repo_path)
        except (gitpython.InvalidGitRepositoryError, gitpython.NoSuchPathError) as e:
            return CleanupResult(ok=False, error=str(e), target=wt_path)
        try:
            repo.git.worktree("remove", wt_path, "--force")
            return CleanupResult(ok=True, target=wt_path)
        except gitpython.GitCommandError:
            logger.debug("git worktree remove failed, removing directory", extra={"path": wt_path})
        try:
            shutil.rmtree(wt_path, ignore_errors=True)
            repo.git.worktree("prune")
        except gitpython.GitCommandError as e:
            return CleanupResult(ok=False, error=str(e.stderr or e), target=wt_path)
        return CleanupResult(ok=True, target=wt_path)

    def cleanup_all(self, repo_path: str, base_dir: Path) -> list[CleanupResult]:
        """Remove every non-main worktree of the repo that lives under base_dir."""
        try:
            worktrees = self.list_worktrees(repo_path)
        except (gitpython.InvalidGitRepositoryError, gitpython.NoSuchPathError, gitpython.GitCommandError) as e:
            raise WorktreeError(f"Failed to list worktrees: {e}") from e
        results = []
        for wt in worktrees:
            if not wt.is_main and Path(wt.path).is_relative_to(base_dir):
                results.append(self.cleanup(repo_path, wt.path))
        return results
