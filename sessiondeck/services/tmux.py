import logging
import re
import shlex
from pathlib import Path

import libtmux

from sessiondeck.constants import DEFAULT_HOOK_DIR, TMUX_SESSION_PREFIX
from sessiondeck.models import CleanupResult
from sessiondeck.services.launcher import CliConfig

logger = logging.getLogger(__name__)

# libtmux.Server() is cheap, but each lookup runs `tmux list-sessions`.
_server: libtmux.Server | None = None

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def _get_server() -> libtmux.Server:
    global _server
    if _server is None:
        _server = libtmux.Server()
    return _server


def tmux_session_name(session_id: str, index: int = 0) -> str:
    base = f"{TMUX_SESSION_PREFIX}-{_UNSAFE_NAME_CHARS.sub('_', session_id)}"
    return base if index == 0 else f"{base}-{index}"


def exit_event_path(exit_dir: Path, handle: str) -> Path:
    return exit_dir / f"exit-{handle}.json"


def build_window_command(handle: str, cli: CliConfig, env: dict[str, str], exit_dir: Path) -> str:
    """Shell command run inside the tmux window.

    The CLI runs in the foreground; when it exits, its exit code is written as a
    process-exit event into the hook drop directory so the registry learns about it.
    """
    env_parts = [f"{key}={shlex.quote(value)}" for key, value in env.items()]
    env_parts.append("TERM=xterm-256color")
    cli_parts = " ".join(shlex.quote(part) for part in [cli.command, *cli.args])
    target = exit_event_path(exit_dir, handle)
    tmp = target.with_name(f".{target.name}.tmp")
    payload = '{"event":"process_exit","handle":"%s","exit_code":%%d}' % handle
    return (
        f"env {' '.join(env_parts)} {cli_parts}; code=$?; "
        f"printf {shlex.quote(payload)} \"$code\" > {shlex.quote(str(tmp))} "
        f"&& mv {shlex.quote(str(tmp))} {shlex.quote(str(target))}"
    )


class TmuxHost:
    """Hosts session processes in detached tmux sessions, one per deck session."""

    def __init__(self, exit_dir: Path = DEFAULT_HOOK_DIR) -> None:
        self.exit_dir = exit_dir

    def _available_name(self, session_id: str) -> str:
        existing = self.live_handles(prefix_only=False)
        for index in range(1000):
            name = tmux_session_name(session_id, index)
            if name not in existing:
                return name
        raise RuntimeError(f"Could not find available tmux session name for '{session_id}'")

    def spawn(self, session_id: str, cli: CliConfig, cwd: str, env: dict[str, str]) -> str:
        """Start the CLI in a new detached tmux session and return its name."""
        self.exit_dir.mkdir(parents=True, exist_ok=True)
        name = self._available_name(session_id)
        cmd = build_window_command(name, cli, env, self.exit_dir)
        tmux_session = _get_server().new_session(
            session_name=name,
            start_directory=cwd,
            window_command=cmd,
        )
        tmux_session.set_option("mouse", "on")
        logger.info("Spawned tmux session", extra={"session_id": session_id, "handle": name, "cwd": cwd})
        return name

    def is_alive(self, handle: str) -> bool:
        try:
            _get_server().sessions.get(session_name=handle)
            return True
        except Exception:
            return False

    def live_handles(self, prefix_only: bool = True) -> set[str]:
        """Names of all live tmux sessions, by default only the ones this deck created."""
        try:
            names = {s.session_name for s in _get_server().sessions}
        except Exception:
            logger.debug("Failed to list tmux sessions", exc_info=True)
            return set()
        if prefix_only:
            names = {n for n in names if n and n.startswith(f"{TMUX_SESSION_PREFIX}-")}
        return names

    def kill(self, handle: str) -> CleanupResult:
        try:
            session = _get_server().sessions.get(session_name=handle)
            session.kill()
        except Exception as e:
            logger.debug("Failed to kill tmux session", extra={"handle": handle})
            return CleanupResult(ok=False, error=str(e), target=handle)
        return CleanupResult(ok=True, target=handle)
