"""Bridge between the assistant's hook mechanism and the session registry.

The assistant runs a small notify script on SessionStart/SessionEnd. The
script drops one JSON file per event into a shared directory; the bridge polls
that directory, turns every file into a `HookEvent` and hands it to the
registry. Status reports and process-exit notices travel the same way.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from sessiondeck.constants import DEFAULT_HOOK_DIR, HOOK_DEBOUNCE_MS, HOOK_SCRIPT_NAME
from sessiondeck.models import CleanupResult, HookEvent, HookEventKind
from sessiondeck.services.watch import Debouncer, DirectoryWatcher

logger = logging.getLogger(__name__)

HOOK_EVENT_NAMES = ("SessionStart", "SessionEnd")

_KIND_BY_NAME = {
    "SessionStart": HookEventKind.SESSION_START,
    "session_start": HookEventKind.SESSION_START,
    "SessionEnd": HookEventKind.SESSION_END,
    "session_end": HookEventKind.SESSION_END,
    "Status": HookEventKind.STATUS,
    "status": HookEventKind.STATUS,
    "ProcessExit": HookEventKind.PROCESS_EXIT,
    "process_exit": HookEventKind.PROCESS_EXIT,
}

NOTIFY_SCRIPT = '''\
#!/usr/bin/env python3
"""Session Deck notify hook. Written by sdeck; changes are overwritten."""
import json
import os
import sys
import tempfile
import time


def main():
    drop_dir = os.environ.get("SDECK_HOOK_DIR") or os.path.join(tempfile.gettempdir(), "sdeck-hooks")
    os.makedirs(drop_dir, exist_ok=True)
    if len(sys.argv) > 2 and sys.argv[1] == "status":
        data = {"event": "status", "status": sys.argv[2], "message": " ".join(sys.argv[3:]) or None}
    else:
        raw = sys.stdin.read()
        try:
            data = json.loads(raw) if raw.strip() else {}
        except ValueError:
            data = {"raw": raw}
        if not isinstance(data, dict):
            data = {"raw": data}
    data["app_session_id"] = os.environ.get("SDECK_SESSION_ID")
    name = "%d-%d.json" % (time.time_ns(), os.getpid())
    tmp = os.path.join(drop_dir, "." + name + ".tmp")
    with open(tmp, "w") as f:
        json.dump(data, f)
    os.replace(tmp, os.path.join(drop_dir, name))


if __name__ == "__main__":
    main()
'''


def script_path(repo_path: Path | str) -> Path:
    return Path(repo_path) / ".claude" / "hooks" / HOOK_SCRIPT_NAME


def settings_path(repo_path: Path | str) -> Path:
    return Path(repo_path) / ".claude" / "settings.local.json"


def hook_command(repo_path: Path | str) -> str:
    return f'python3 "{script_path(repo_path).as_posix()}"'


def _read_settings(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def _is_ours(matcher: Any, command: str) -> bool:
    if not isinstance(matcher, dict):
        return False
    return any(isinstance(h, dict) and h.get("command") == command for h in matcher.get("hooks") or [])


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.warning("Failed to delete hook file", extra={"path": str(path)})


def translate(data: dict[str, Any]) -> HookEvent | None:
    """Turn a raw hook payload into a HookEvent, or None for event types nobody handles."""
    name = data.get("event") or data.get("hook_event_name")
    kind = _KIND_BY_NAME.get(name) if isinstance(name, str) else None
    if kind is None:
        return None
    exit_code = data.get("exit_code")
    return HookEvent(
        kind=kind,
        app_session_id=data.get("app_session_id") or None,
        conversation_id=data.get("session_id") or None,
        cwd=data.get("cwd") or None,
        handle=data.get("handle") or None,
        exit_code=exit_code if isinstance(exit_code, int) else None,
        status=data.get("status") or None,
        message=data.get("message") or None,
        raw=data,
    )


class HookBridge:
    def __init__(
        self,
        dispatch: Callable[[HookEvent], None],
        hook_dir: Path = DEFAULT_HOOK_DIR,
    ) -> None:
        self.hook_dir = hook_dir
        self._dispatch = dispatch
        self._debouncer = Debouncer()
        self._watcher: DirectoryWatcher | None = None

    @property
    def watching(self) -> bool:
        return self._watcher is not None and self._watcher.running

    def install(self, repo_path: Path | str) -> bool:
        """Write the notify script and register it in the repo's local assistant settings.

        Idempotent. Returns False (after logging) when anything fails.
        """
        try:
            script = script_path(repo_path)
            script.parent.mkdir(parents=True, exist_ok=True)
            if not script.exists() or script.read_text() != NOTIFY_SCRIPT:
                script.write_text(NOTIFY_SCRIPT)
                script.chmod(0o755)

            path = settings_path(repo_path)
            settings = _read_settings(path)
            hooks = settings.get("hooks")
            if not isinstance(hooks, dict):
                hooks = {}
                settings["hooks"] = hooks

            command = hook_command(repo_path)
            entry = {"type": "command", "command": command, "timeout": 5, "async": True}
            changed = not path.exists()
            for event_name in HOOK_EVENT_NAMES:
                matchers = hooks.get(event_name)
                if not isinstance(matchers, list):
                    matchers = []
                if not any(_is_ours(m, command) for m in matchers):
                    matchers.append({"hooks": [entry]})
                    hooks[event_name] = matchers
                    changed = True

            if changed:
                path.write_text(json.dumps(settings, indent=2))
                logger.info("Hooks registered", extra={"settings": str(path)})
            return True
        except OSError as e:
            logger.warning("Failed to register hooks", extra={"repo_path": str(repo_path), "error": str(e)})
            return False

    def uninstall(self, repo_path: Path | str) -> CleanupResult:
        """Remove this integration's hook matchers, leaving everything else untouched."""
        path = settings_path(repo_path)
        settings = _read_settings(path)
        hooks = settings.get("hooks")
        if not isinstance(hooks, dict):
            return CleanupResult(ok=True, target=str(path))

        command = hook_command(repo_path)
        changed = False
        for event_name in HOOK_EVENT_NAMES:
            matchers = hooks.get(event_name)
            if not isinstance(matchers, list):
                continue
            kept = [m for m in matchers if not _is_ours(m, command)]
            if len(kept) != len(matchers):
                changed = True
                if kept:
                    hooks[event_name] = kept
                else:
                    del hooks[event_name]

        if not changed:
            return CleanupResult(ok=True, target=str(path))
        try:
            path.write_text(json.dumps(settings, indent=2))
        except OSError as e:
            logger.warning("Failed to unregister hooks", extra={"settings": str(path), "error": str(e)})
            return CleanupResult(ok=False, error=str(e), target=str(path))
        logger.info("Hooks unregistered", extra={"settings": str(path)})
        return CleanupResult(ok=True, target=str(path))

    def start(self) -> None:
        """Start polling the drop directory. Calling it again is a no-op."""
        if self.watching:
            return
        self.hook_dir.mkdir(parents=True, exist_ok=True)
        self._watcher = DirectoryWatcher(self.hook_dir, self._on_files, pattern="*.json", report_existing=True)
        self._watcher.start()
        logger.info("Watching for hook events", extra={"hook_dir": str(self.hook_dir)})

    def stop(self) -> None:
        self._debouncer.cancel_all()
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
            logger.debug("Stopped watching hook directory")

    def _on_files(self, paths: list[Path]) -> None:
        for path in paths:
            self._debouncer.schedule(str(path), HOOK_DEBOUNCE_MS, self._handle_file, path)

    async def _handle_file(self, path: Path) -> None:
        event = await asyncio.to_thread(self.read_event_file, path)
        if event is not None:
            self._dispatch(event)

    def read_event_file(self, path: Path) -> HookEvent | None:
        """Read, delete and translate one event file. Unparsable files are deleted too."""
        try:
            content = path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Failed to read hook file", extra={"path": str(path), "error": str(e)})
            return None
        finally:
            _discard(path)

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning("Discarding unparsable hook file", extra={"path": str(path), "error": str(e)})
            return None
        if not isinstance(data, dict):
            logger.warning("Discarding hook file without an object payload", extra={"path": str(path)})
            return None

        event = translate(data)
        if event is None:
            logger.debug("Hook event of unknown type", extra={"payload": data})
        else:
            logger.debug("Hook event", extra={"kind": event.kind.value, "app_session_id": event.app_session_id})
        return event
