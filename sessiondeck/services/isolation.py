import logging
import uuid

from pydantic import BaseModel

from sessiondeck.config import ResolvedConfig, WorktreeMode
from sessiondeck.services.worktree import WorktreeProvisioner, safe_branch_name, worktree_path_for

logger = logging.getLogger(__name__)


class IsolationResult(BaseModel):
    work_dir: str
    branch: str | None = None
    worktree_path: str | None = None

    @property
    def isolated(self) -> bool:
        return self.worktree_path is not None


def decide_isolation(
    provisioner: WorktreeProvisioner,
    config: ResolvedConfig,
    repo_path: str,
    branch: str | None = None,
) -> IsolationResult:
    """Pick the working directory for a new session according to the worktree mode.

    Never raises: any provisioning failure is logged and the session falls back
    to the repository root. Blocking; run it with asyncio.to_thread.
    """
    mode = config.worktree_mode
    if mode == WorktreeMode.NEVER:
        return IsolationResult(work_dir=repo_path, branch=branch)

    try:
        if mode == WorktreeMode.ALWAYS:
            target_branch = branch or provisioner.current_branch(repo_path)
            suffix = uuid.uuid4().hex[:8]
            wt_path = config.worktree_base_dir(repo_path) / f"{safe_branch_name(target_branch)}-{suffix}"
        else:
            if not branch:
                return IsolationResult(work_dir=repo_path)
            if branch == provisioner.current_branch(repo_path):
                return IsolationResult(work_dir=repo_path, branch=branch)
            target_branch = branch
            wt_path = worktree_path_for(config.worktree_base_dir(repo_path), repo_path, branch)

        created = provisioner.prepare(repo_path, target_branch, wt_path)
    except Exception as e:
        logger.warning(
            "Worktree provisioning failed, using repository root",
            extra={"repo_path": repo_path, "branch": branch, "mode": mode.value, "error": str(e)},
        )
        return IsolationResult(work_dir=repo_path, branch=branch)

    return IsolationResult(work_dir=str(created), branch=target_branch, worktree_path=str(created))
