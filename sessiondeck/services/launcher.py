"""CLI resolution and invocation for each session mode.

Each `AiMode` maps to a `ModeSpec` describing how to find its executable and
whether it reports through the hook bridge. `build_cli_config` turns a
session into the concrete command and argument list handed to the process
host.
"""

import glob
import logging
import os
import shutil
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel

from sessiondeck.models import AiMode, Session

logger = logging.getLogger(__name__)

INTEGRATION_PROMPT = """
## Session Deck Integration

Your terminal is managed by Session Deck, which shows the user your current state.
Report your status at key transitions by running:

    python3 "$SDECK_NOTIFY_SCRIPT" status <state> "<short description>"

- When starting work: state "working", describing what you are doing
- When planning: state "planning", describing what you are planning
- When waiting for the user: state "needs_input", with the question as the description
- When the task is complete: state "finished"
- On errors: state "error", describing what went wrong
""".strip()

# Shells that do not understand the login flag.
_NO_LOGIN_SHELLS = {"sh", "cmd", "powershell", "pwsh"}


class CliConfig(BaseModel):
    command: str
    args: list[str] = []


@dataclass(frozen=True)
class ModeSpec:
    display_name: str
    executable: str | None
    known_paths: Callable[[], list[str]]
    uses_hooks: bool


def _is_windows() -> bool:
    return sys.platform == "win32"


def claude_known_paths() -> list[str]:
    """Well-known install locations for the assistant CLI, in lookup order."""
    home = Path.home()
    if _is_windows():
        app_data = Path(os.environ.get("APPDATA") or home / "AppData" / "Roaming")
        local_app_data = Path(os.environ.get("LOCALAPPDATA") or home / "AppData" / "Local")
        return [
            str(app_data / "npm" / "claude.cmd"),
            str(app_data / "npm" / "claude"),
            str(app_data / ".npm-global" / "bin" / "claude.cmd"),
            str(app_data / ".npm-global" / "bin" / "claude"),
            str(home / ".local" / "bin" / "claude.exe"),
            str(home / ".local" / "bin" / "claude"),
            str(local_app_data / "pnpm" / "claude.cmd"),
            str(local_app_data / "pnpm" / "claude"),
            str(home / ".volta" / "bin" / "claude.exe"),
        ]
    return [
        "/usr/local/bin/claude",
        "/usr/bin/claude",
        str(home / ".npm-global" / "bin" / "claude"),
        str(home / ".local" / "bin" / "claude"),
        str(home / ".nvm" / "versions" / "node" / "*" / "bin" / "claude"),
        str(home / "Library" / "pnpm" / "claude"),
        str(home / ".local" / "share" / "pnpm" / "claude"),
        "/opt/homebrew/bin/claude",
        str(home / ".volta" / "bin" / "claude"),
        str(home / ".bun" / "bin" / "claude"),
    ]


MODE_SPECS: dict[AiMode, ModeSpec] = {
    AiMode.CLAUDE: ModeSpec(
        display_name="Claude",
        executable="claude",
        known_paths=claude_known_paths,
        uses_hooks=True,
    ),
    AiMode.PLAIN: ModeSpec(
        display_name="Plain Terminal",
        executable=None,
        known_paths=list,
        uses_hooks=False,
    ),
}


def mode_name(mode: AiMode) -> str:
    return MODE_SPECS[mode].display_name


def _first_existing(patterns: list[str]) -> str | None:
    for pattern in patterns:
        if glob.has_magic(pattern):
            matches = sorted(glob.glob(pattern))
            if matches:
                return matches[0]
        elif os.path.exists(pattern):
            return pattern
    return None


def resolve_executable(name: str, known_paths: list[str]) -> str:
    """Find an executable on PATH, then in known locations, else return the bare name."""
    found = shutil.which(name)
    if found:
        return found
    if _is_windows():
        for suffix in (".cmd", ".exe"):
            found = shutil.which(f"{name}{suffix}")
            if found:
                return found
    known = _first_existing(known_paths)
    if known:
        return known
    logger.warning("CLI executable not found, using bare name", extra={"command": name})
    return name


def shell_config() -> CliConfig:
    if _is_windows():
        return CliConfig(command=os.environ.get("COMSPEC") or "cmd.exe")
    shell = os.environ.get("SHELL") or "/bin/bash"
    stem = Path(shell).stem.lower()
    args = [] if stem in _NO_LOGIN_SHELLS else ["-l"]
    return CliConfig(command=shell, args=args)


def build_cli_config(session: Session) -> CliConfig:
    """Build the command line for a session according to its mode and launch directive."""
    spec = MODE_SPECS[session.ai_mode]
    if spec.executable is None:
        return shell_config()

    args: list[str] = []
    if session.skip_permissions:
        args.append("--dangerously-skip-permissions")

    if session.continue_last_session:
        args.append("--continue")
    elif session.resume_session_id:
        args.extend(["--resume", session.resume_session_id])
    elif session.fork_session_id:
        args.extend(["--resume", session.fork_session_id, "--fork-session"])
    else:
        if session.model:
            args.extend(["--model", session.model])
        if session.system_prompt:
            args.extend(["--system-prompt", session.system_prompt])
        args.extend(["--append-system-prompt", INTEGRATION_PROMPT])

    command = resolve_executable(spec.executable, spec.known_paths())
    return CliConfig(command=command, args=args)
