from pathlib import Path
from unittest.mock import MagicMock

import git as gitpython
import pytest

from sessiondeck.services.worktree import (
    BranchNotFoundError,
    WorktreeError,
    WorktreeProvisioner,
    parse_worktree_list,
    safe_branch_name,
    worktree_path_for,
)


def _porcelain(entries: list[tuple[str, str]]) -> str:
    """Build `git worktree list --porcelain` output from (path, branch) pairs."""
    blocks = []
    for path, branch in entries:
        blocks.append(f"worktree {path}\nHEAD abc123\nbranch refs/heads/{branch}\n")
    return "\n".join(blocks) + "\n"


@pytest.fixture()
def mock_repo(monkeypatch) -> MagicMock:
    repo = MagicMock()
    repo.git.worktree.return_value = ""
    monkeypatch.setattr(gitpython, "Repo", lambda *a, **kw: repo)
    return repo


def _git_error(stderr: str) -> gitpython.GitCommandError:
    return gitpython.GitCommandError("worktree", 128, stderr=stderr)


def test_branch_not_found_error():
    err = BranchNotFoundError("feature/x")
    assert err.branch == "feature/x"
    assert "feature/x" in str(err)
    assert isinstance(err, WorktreeError)


def test_safe_branch_name():
    assert safe_branch_name("feature/login.v2") == "feature_login_v2"


class TestWorktreePathFor:
    def test_deterministic(self, tmp_path):
        assert worktree_path_for(tmp_path, "/repo", "feature") == worktree_path_for(tmp_path, "/repo", "feature")

    def test_differs_per_repo(self, tmp_path):
        assert worktree_path_for(tmp_path, "/a", "feature") != worktree_path_for(tmp_path, "/b", "feature")

    def test_layout(self, tmp_path):
        path = worktree_path_for(tmp_path, "/repo", "feature/x")
        assert path.parent == tmp_path
        prefix, digest = path.name.rsplit("-", 1)
        assert prefix == "feature_x"
        assert len(digest) == 16


class TestParseWorktreeList:
    def test_entries(self):
        wts = parse_worktree_list(_porcelain([("/repo", "main"), ("/wt/feat", "feat")]))
        assert [wt.path for wt in wts] == ["/repo", "/wt/feat"]
        assert wts[0].is_main
        assert not wts[1].is_main
        assert wts[1].branch == "feat"
        assert wts[1].head == "abc123"

    def test_flags(self):
        output = (
            "worktree /repo\nHEAD a\nbranch refs/heads/main\n\n"
            "worktree /wt/x\nHEAD b\ndetached\nlocked\n\n"
            "worktree /wt/y\nHEAD c\nbranch refs/heads/y\nprunable gitdir file points to non-existent location\n"
        )
        wts = parse_worktree_list(output)
        assert wts[1].branch == "detached"
        assert wts[1].is_locked
        assert wts[2].is_prunable

    def test_no_trailing_blank_line(self):
        wts = parse_worktree_list("worktree /repo\nHEAD a\nbranch refs/heads/main")
        assert len(wts) == 1

    def test_empty(self):
        assert parse_worktree_list("") == []


class TestBranchExists:
    def test_local(self, mock_repo):
        assert WorktreeProvisioner().branch_exists("/repo", "main")
        mock_repo.git.branch.assert_not_called()

    def test_remote(self, mock_repo):
        mock_repo.git.rev_parse.side_effect = gitpython.GitCommandError("rev-parse", 128)
        mock_repo.git.branch.return_value = "  origin/feature"
        assert WorktreeProvisioner().branch_exists("/repo", "feature")
        mock_repo.git.branch.assert_called_once_with("-r", "--list", "*/feature")

    def test_missing(self, mock_repo):
        mock_repo.git.rev_parse.side_effect = gitpython.GitCommandError("rev-parse", 128)
        mock_repo.git.branch.return_value = ""
        assert not WorktreeProvisioner().branch_exists("/repo", "nope")


def test_current_branch(mock_repo):
    mock_repo.git.rev_parse.return_value = "develop\n"
    assert WorktreeProvisioner().current_branch("/repo") == "develop"


class TestPrepare:
    def test_creates_worktree(self, mock_repo, tmp_path):
        wt = tmp_path / "wts" / "feat-1"
        mock_repo.git.worktree.return_value = _porcelain([("/repo", "main")])

        assert WorktreeProvisioner().prepare("/repo", "feat", wt) == wt

        mock_repo.git.worktree.assert_any_call("add", str(wt), "feat")
        assert wt.parent.is_dir()

    def test_reuses_existing(self, mock_repo, tmp_path):
        wt = tmp_path / "feat-1"
        wt.mkdir()
        mock_repo.git.worktree.return_value = _porcelain([("/repo", "main"), (str(wt), "feat")])

        assert WorktreeProvisioner().prepare("/repo", "feat", wt) == wt

        calls = [c.args for c in mock_repo.git.worktree.call_args_list]
        assert calls == [("list", "--porcelain")]

    def test_prunes_stale_entry(self, mock_repo, tmp_path):
        wt = tmp_path / "gone"
        mock_repo.git.worktree.return_value = _porcelain([("/repo", "main"), (str(wt), "feat")])

        WorktreeProvisioner().prepare("/repo", "feat", wt)

        mock_repo.git.worktree.assert_any_call("prune")
        mock_repo.git.worktree.assert_any_call("add", str(wt), "feat")

    def test_missing_branch(self, mock_repo, tmp_path):
        mock_repo.git.rev_parse.side_effect = gitpython.GitCommandError("rev-parse", 128)
        mock_repo.git.branch.return_value = ""
        with pytest.raises(BranchNotFoundError):
            WorktreeProvisioner().prepare("/repo", "nope", tmp_path / "wt")

    def test_detaches_when_branch_checked_out(self, mock_repo, tmp_path):
        wt = tmp_path / "wt"

        def worktree(*args):
            if args[0] == "add" and "--detach" not in args:
                raise _git_error("fatal: 'main' is already checked out at '/repo'")
            return ""

        mock_repo.git.worktree.side_effect = worktree

        assert WorktreeProvisioner().prepare("/repo", "main", wt) == wt
        mock_repo.git.worktree.assert_any_call("add", "--detach", str(wt), "main")

    def test_other_git_failure(self, mock_repo, tmp_path):
        def worktree(*args):
            if args[0] == "add":
                raise _git_error("fatal: invalid reference")
            return ""

        mock_repo.git.worktree.side_effect = worktree

        with pytest.raises(WorktreeError, match="invalid reference"):
            WorktreeProvisioner().prepare("/repo", "main", tmp_path / "wt")


class TestCleanup:
    def test_removes_worktree(self, mock_repo):
        result = WorktreeProvisioner().cleanup("/repo", "/wt/feat")
        assert result.ok
        mock_repo.git.worktree.assert_called_once_with("remove", "/wt/feat", "--force")

    def test_falls_back_to_rmtree_and_prune(self, mock_repo, tmp_path):
        wt = tmp_path / "feat"
        wt.mkdir()
        (wt / "file.txt").write_text("x")

        def worktree(*args):
            if args[0] == "remove":
                raise _git_error("fatal: not a working tree")
            return ""

        mock_repo.git.worktree.side_effect = worktree

        result = WorktreeProvisioner().cleanup("/repo", str(wt))

        assert result.ok
        assert not wt.exists()
        mock_repo.git.worktree.assert_any_call("prune")

    def test_invalid_repo(self, monkeypatch):
        monkeypatch.setattr(gitpython, "Repo", MagicMock(side_effect=gitpython.NoSuchPathError("/nope")))
        result = WorktreeProvisioner().cleanup("/nope", "/wt")
        assert not result.ok
        assert result.target == "/wt"


def test_cleanup_all_skips_main_and_foreign(mock_repo, tmp_path):
    base = tmp_path / "wts"
    mock_repo.git.worktree.return_value = _porcelain([
        (str(tmp_path / "repo"), "main"),
        (str(base / "a"), "a"),
        ("/elsewhere/b", "b"),
    ])

    results = WorktreeProvisioner().cleanup_all(str(tmp_path / "repo"), base)

    assert [r.target for r in results] == [str(Path(base / "a"))]


def test_cleanup_all_invalid_repo(monkeypatch, tmp_path):
    monkeypatch.setattr(gitpython, "Repo", MagicMock(side_effect=gitpython.InvalidGitRepositoryError("/nope")))
    with pytest.raises(WorktreeError, match="Failed to list worktrees"):
        WorktreeProvisioner().cleanup_all("/nope", tmp_path)
