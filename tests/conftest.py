import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

import sessiondeck.services.tmux as _tmux_mod
from sessiondeck.config import ResolvedConfig, WorktreeLocation, WorktreeMode
from sessiondeck.models import CleanupResult
from sessiondeck.services.events import EventBus
from sessiondeck.services.registry import SessionRegistry
from sessiondeck.services.tmux import exit_event_path


@pytest.fixture(autouse=True)
def _reset_tmux_server():
    """Reset the cached tmux server between tests."""
    _tmux_mod._server = None
    yield
    _tmux_mod._server = None


class FakeHost:
    """In-memory stand-in for TmuxHost."""

    def __init__(self, exit_dir: Path) -> None:
        self.exit_dir = exit_dir
        self.live: set[str] = set()
        self.spawned: list[tuple] = []
        self.killed: list[str] = []
        self.spawn_error: Exception | None = None

    def spawn(self, session_id, cli, cwd, env):
        if self.spawn_error:
            raise self.spawn_error
        handle = f"sdeck-{session_id}"
        self.live.add(handle)
        self.spawned.append((session_id, cli, cwd, env))
        return handle

    def is_alive(self, handle):
        return handle in self.live

    def live_handles(self, prefix_only=True):
        return set(self.live)

    def kill(self, handle):
        self.killed.append(handle)
        self.live.discard(handle)
        return CleanupResult(ok=True, target=handle)


class FakeProvisioner:
    """Worktree provisioner that records calls instead of running git."""

    def __init__(self, current: str = "main") -> None:
        self.current = current
        self.prepared: list[tuple] = []
        self.cleaned: list[tuple] = []
        self.error: Exception | None = None

    def current_branch(self, repo_path):
        return self.current

    def prepare(self, repo_path, branch, wt_path):
        if self.error:
            raise self.error
        self.prepared.append((repo_path, branch, wt_path))
        return wt_path

    def cleanup(self, repo_path, wt_path):
        self.cleaned.append((repo_path, wt_path))
        return CleanupResult(ok=True, target=wt_path)


@pytest.fixture()
def fake_config(tmp_path: Path) -> ResolvedConfig:
    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    return ResolvedConfig(
        repo_root=repo_root,
        worktree_mode=WorktreeMode.BRANCH,
        worktree_location=WorktreeLocation.PROJECT,
        auto_cleanup=False,
        max_concurrent_sessions=12,
        hook_dir=tmp_path / "hooks",
    )


@pytest.fixture()
def host(tmp_path: Path) -> FakeHost:
    return FakeHost(tmp_path / "hooks")


@pytest.fixture()
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def emitted(bus: EventBus) -> list[tuple[str, dict]]:
    """Every event published on the bus, in order."""
    seen: list[tuple[str, dict]] = []
    bus.subscribe(lambda name, data: seen.append((name, data)))
    return seen


@pytest.fixture()
def hooks(tmp_path: Path) -> MagicMock:
    bridge = MagicMock()
    bridge.hook_dir = tmp_path / "hooks"
    bridge.install.return_value = True
    return bridge


@pytest.fixture()
def registry(host, provisioner, bus, hooks, fake_config, tmp_path) -> SessionRegistry:
    return SessionRegistry(
        host,
        provisioner,
        bus,
        hooks=hooks,
        config_for=lambda repo_path: fake_config,
        state_dir=tmp_path / "state",
    )


@pytest.fixture()
def bridged_registry(host, provisioner, bus, fake_config, tmp_path) -> SessionRegistry:
    """Registry wired to a real HookBridge polling host.exit_dir. Tests stop its hooks themselves."""
    return SessionRegistry(
        host,
        provisioner,
        bus,
        config_for=lambda repo_path: fake_config,
        state_dir=tmp_path / "state",
    )


@pytest.fixture()
def write_exit_file(host):
    """Drop the file the tmux window command writes when its process ends."""

    def write(handle: str, exit_code: int) -> Path:
        host.exit_dir.mkdir(parents=True, exist_ok=True)
        path = exit_event_path(host.exit_dir, handle)
        path.write_text(json.dumps({"event": "process_exit", "handle": handle, "exit_code": exit_code}))
        return path

    return write
