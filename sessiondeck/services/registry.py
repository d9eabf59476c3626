"""Session table, status state machine and admission control.

The registry is the only component that mutates `Session` records. It is
driven from a single asyncio loop: every mutation is synchronous, blocking
work (tmux, git, file I/O) is pushed to threads, and every coroutine re-reads
its session after each await because the session may have been removed
meanwhile.
"""

import asyncio
import itertools
import logging
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from sessiondeck.config import ResolvedConfig, load_config
from sessiondeck.constants import MAX_CONCURRENT_SESSIONS, STATE_DIR
from sessiondeck.models import (
    FREEABLE_STATUSES,
    AiMode,
    CleanupResult,
    HookEvent,
    HookEventKind,
    LaunchResult,
    RestoreEntry,
    Session,
    SessionStatus,
    parse_status,
)
from sessiondeck.services import events
from sessiondeck.services.events import EventBus
from sessiondeck.services.hooks import HookBridge, script_path
from sessiondeck.services.launcher import MODE_SPECS, build_cli_config, mode_name
from sessiondeck.services.state import save_snapshot
from sessiondeck.services.tmux import TmuxHost, exit_event_path
from sessiondeck.services.worktree import WorktreeProvisioner

logger = logging.getLogger(__name__)

ZOMBIE_MESSAGE = "Terminal process terminated unexpectedly"


class LaunchDirective(str, Enum):
    CONTINUE = "continue"
    RESUME = "resume"
    FORK = "fork"


# First supplied directive wins; the rest are dropped.
LAUNCH_DIRECTIVE_PRIORITY = (LaunchDirective.CONTINUE, LaunchDirective.RESUME, LaunchDirective.FORK)

_UPDATABLE_FIELDS = {"name", "ai_mode", "model", "system_prompt", "max_tokens", "temperature", "mcp_servers"}


class AdmissionRejection(BaseModel):
    current: int
    limit: int
    idle_sessions: list[str] = []

    @property
    def error(self) -> str:
        return (
            f"Session limit reached ({self.current}/{self.limit}). "
            "Close an idle session to start a new one."
        )

    def to_wire(self) -> dict[str, Any]:
        return {"error": self.error, "idleSessions": self.idle_sessions}


class Reservation:
    """A slot held by an admitted launch until `release` is called."""

    def __init__(self, gate: "AdmissionGate") -> None:
        self._gate = gate
        self._released = False

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._gate._pending -= 1


class AdmissionGate:
    """Caps the number of running sessions.

    `try_acquire` is synchronous, so the check and the reservation happen in
    one step on the event loop and concurrent requests cannot both slip in
    under the limit.
    """

    def __init__(self, registry: "SessionRegistry", limit: int = MAX_CONCURRENT_SESSIONS) -> None:
        self.registry = registry
        self.limit = limit
        self._pending = 0

    @property
    def pending(self) -> int:
        return self._pending

    def try_acquire(self) -> Reservation | AdmissionRejection:
        # One batched tmux listing, run on the loop so counting and reserving stay a single step.
        running = self.registry.running_sessions()
        current = len(running) + self._pending
        if current >= self.limit:
            idle = [s.name for s in running if s.status in FREEABLE_STATUSES]
            logger.info("Session limit reached", extra={"current": current, "limit": self.limit})
            return AdmissionRejection(current=current, limit=self.limit, idle_sessions=idle)
        self._pending += 1
        return Reservation(self)


class SessionRegistry:
    def __init__(
        self,
        host: TmuxHost,
        provisioner: WorktreeProvisioner,
        bus: EventBus,
        hooks: HookBridge | None = None,
        config_for: Callable[[str], ResolvedConfig] = load_config,
        state_dir: Path = STATE_DIR,
    ) -> None:
        self.host = host
        self.provisioner = provisioner
        self.bus = bus
        self.hooks = hooks if hooks is not None else HookBridge(self.handle_hook_event, host.exit_dir)
        self.config_for = config_for
        self.state_dir = state_dir
        self.last_cleanup: CleanupResult | None = None
        self._sessions: dict[str, Session] = {}
        self._counter = itertools.count(1)
        self._launching: set[str] = set()
        self._hooked: set[tuple[AiMode, str]] = set()

    # --- Queries ---

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def for_project(self, repo_path: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.repo_path == repo_path]

    def running_sessions(self) -> list[Session]:
        """Sessions whose process handle is confirmed live by the host."""
        with_handle = [s for s in self._sessions.values() if s.terminal_handle]
        if not with_handle:
            return []
        live = self.host.live_handles()
        return [s for s in with_handle if s.terminal_handle in live]

    def idle_sessions(self) -> list[Session]:
        return [s for s in self.running_sessions() if s.status in FREEABLE_STATUSES]

    def find_by_handle(self, handle: str) -> Session | None:
        return next((s for s in self._sessions.values() if s.terminal_handle == handle), None)

    # --- Mutations ---

    def _emit_status(self, session: Session, message: str | None = None) -> None:
        self.bus.emit(events.SESSION_STATUS, {
            "sessionId": session.id,
            "status": session.status.value,
            "message": message,
            "needsInputPrompt": session.needs_input_prompt,
        })

    def create(
        self,
        mode: AiMode,
        repo_path: str,
        *,
        name: str | None = None,
        working_directory: str | None = None,
        model: str | None = None,
        system_prompt: str | None = None,
        mcp_servers: list[str] | None = None,
        resume_session_id: str | None = None,
        fork_session_id: str | None = None,
        continue_last_session: bool = False,
        skip_permissions: bool = False,
    ) -> Session:
        counter = next(self._counter)
        session_id = f"session-{counter}-{int(time.time() * 1000)}"

        supplied = {
            LaunchDirective.CONTINUE: continue_last_session,
            LaunchDirective.RESUME: resume_session_id,
            LaunchDirective.FORK: fork_session_id,
        }
        chosen = next((d for d in LAUNCH_DIRECTIVE_PRIORITY if supplied[d]), None)
        dropped = [d.value for d in LAUNCH_DIRECTIVE_PRIORITY if supplied[d] and d != chosen]
        if dropped:
            logger.warning(
                "Multiple launch directives supplied, keeping the first by priority",
                extra={"session_id": session_id, "kept": chosen.value, "dropped": dropped},
            )

        resume_id = resume_session_id if chosen == LaunchDirective.RESUME else None
        session = Session(
            id=session_id,
            name=name or f"Session {counter}",
            working_directory=working_directory or repo_path,
            repo_path=repo_path,
            ai_mode=mode,
            model=model,
            system_prompt=system_prompt,
            mcp_servers=mcp_servers,
            resume_session_id=resume_id,
            fork_session_id=fork_session_id if chosen == LaunchDirective.FORK else None,
            continue_last_session=chosen == LaunchDirective.CONTINUE,
            conversation_id=resume_id,
            skip_permissions=skip_permissions,
        )
        self._sessions[session_id] = session
        logger.info("Created session", extra={"session_id": session_id, "mode": mode.value, "repo_path": repo_path})
        self.bus.emit(events.SESSION_CREATED, session.to_wire())
        return session

    def update(self, session_id: str, **changes: Any) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        for field, value in changes.items():
            if field not in _UPDATABLE_FIELDS:
                raise ValueError(f"Field cannot be updated: {field}")
            if value is not None:
                setattr(session, field, AiMode(value) if field == "ai_mode" else value)
        session.touch()
        self._emit_status(session, "Session updated")
        return session

    def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        message: str | None = None,
        needs_input: bool | None = None,
    ) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        logger.debug("Updating session status", extra={"session_id": session_id, "status": status.value})
        session.status = status
        session.status_message = message
        session.needs_input_prompt = needs_input
        session.touch()
        self._emit_status(session, message)
        return session

    def assign_branch(self, session_id: str, branch: str, worktree_path: str | None = None) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        session.branch = branch
        session.worktree_path = worktree_path
        session.touch()
        self._emit_status(session, f"Branch assigned: {branch}")
        return session

    async def launch(self, session_id: str, repo_path: str, work_dir: str, mode: AiMode) -> LaunchResult:
        """Spawn the session's CLI in a new terminal. Never raises."""
        session = self._sessions.get(session_id)
        if session is None:
            return LaunchResult(success=False, error=f"Session not found: {session_id}")
        if session_id in self._launching:
            return LaunchResult(success=False, error="Session launch already in progress")

        self._launching.add(session_id)
        try:
            if session.terminal_handle:
                alive = await asyncio.to_thread(self.host.is_alive, session.terminal_handle)
                session = self._sessions.get(session_id)
                if session is None:
                    return LaunchResult(success=False, error=f"Session not found: {session_id}")
                if alive:
                    return LaunchResult(success=False, error="Session already has an active terminal")
                session.terminal_handle = None

            self.update_status(session_id, SessionStatus.CONNECTING, "Starting AI session...")
            spec = MODE_SPECS[mode]
            cli = await asyncio.to_thread(build_cli_config, session.model_copy(update={"ai_mode": mode}))
            env = {
                "SDECK_SESSION_ID": session_id,
                "SDECK_REPO_PATH": repo_path,
                "SDECK_WORK_DIR": work_dir,
                "SDECK_AI_MODE": mode.value,
                "SDECK_HOOK_DIR": str(self.hooks.hook_dir),
                "SDECK_NOTIFY_SCRIPT": script_path(repo_path).as_posix(),
            }
            if session.model:
                env["SDECK_MODEL"] = session.model

            if spec.uses_hooks:
                key = (mode, repo_path)
                if key not in self._hooked and await asyncio.to_thread(self.hooks.install, repo_path):
                    self._hooked.add(key)
            # Every mode reports its exit through the drop directory.
            self.hooks.start()

            logger.info(
                "Launching session",
                extra={"session_id": session_id, "command": cli.command, "args": cli.args, "cwd": work_dir},
            )
            handle = await asyncio.to_thread(self.host.spawn, session_id, cli, work_dir, env)

            session = self._sessions.get(session_id)
            if session is None:
                logger.info("Session removed during launch, killing its process", extra={"session_id": session_id})
                await asyncio.to_thread(self.host.kill, handle)
                return LaunchResult(success=False, error=f"Session not found: {session_id}")

            session.terminal_handle = handle
            session.working_directory = work_dir
            self.update_status(session_id, SessionStatus.ACTIVE, f"Running {mode_name(mode)}")
            return LaunchResult(success=True, handle=handle)
        except Exception as e:
            logger.error("Failed to launch session", extra={"session_id": session_id, "error": str(e)}, exc_info=True)
            self.update_status(session_id, SessionStatus.ERROR, f"Launch failed: {e}")
            return LaunchResult(success=False, error=str(e))
        finally:
            self._launching.discard(session_id)

    async def stop(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None or not session.terminal_handle:
            return False
        handle = session.terminal_handle
        if not await asyncio.to_thread(self.host.is_alive, handle):
            session = self._sessions.get(session_id)
            if session is not None and session.terminal_handle == handle:
                session.terminal_handle = None
            return False

        self.update_status(session_id, SessionStatus.DISCONNECTED, "Stopping session...")
        await asyncio.to_thread(self.host.kill, handle)
        session = self._sessions.get(session_id)
        if session is None:
            return True
        if session.terminal_handle == handle:
            session.terminal_handle = None
        self.update_status(session_id, SessionStatus.IDLE, "Session stopped")
        logger.info("Session stopped", extra={"session_id": session_id})
        return True

    async def remove(self, session_id: str) -> bool:
        """Kill the session's process, clean its worktree if configured, and forget it."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info("Removing session", extra={"session_id": session_id})

        if session.terminal_handle:
            await asyncio.to_thread(self.host.kill, session.terminal_handle)

        if session.worktree_path:
            config = await asyncio.to_thread(self.config_for, session.repo_path)
            if config.auto_cleanup:
                result = await asyncio.to_thread(self.provisioner.cleanup, session.repo_path, session.worktree_path)
                self.last_cleanup = result
                if result.ok:
                    logger.info("Cleaned up worktree", extra={"session_id": session_id, "path": result.target})
                else:
                    logger.warning(
                        "Failed to clean up worktree",
                        extra={"session_id": session_id, "path": result.target, "error": result.error},
                    )

        self.bus.emit(events.SESSION_REMOVED, {"sessionId": session_id})
        return True

    async def remove_for_project(self, repo_path: str) -> int:
        removed = 0
        for session in self.for_project(repo_path):
            if await self.remove(session.id):
                removed += 1
        return removed

    # --- Signals from processes and hooks ---

    def handle_process_exit(self, handle: str, exit_code: int | None) -> Session | None:
        session = self.find_by_handle(handle)
        if session is None:
            logger.debug("Exit for unknown handle", extra={"handle": handle})
            return None
        session.terminal_handle = None
        if exit_code == 0:
            status, message = SessionStatus.IDLE, "Session ended normally"
        else:
            status, message = SessionStatus.ERROR, f"Session exited with code {exit_code}"
        logger.info("Session process exited", extra={"session_id": session.id, "exit_code": exit_code})
        return self.update_status(session.id, status, message)

    async def drain_exit_notice(self, handle: str) -> bool:
        """Apply an exit file for `handle` that the hook watcher has not consumed yet."""
        event = await asyncio.to_thread(self.hooks.read_event_file, exit_event_path(self.host.exit_dir, handle))
        if not isinstance(event, HookEvent) or event.kind != HookEventKind.PROCESS_EXIT:
            return False
        self.handle_process_exit(event.handle or handle, event.exit_code)
        return True

    def _match_conversation_owner(self, event: HookEvent) -> Session | None:
        if event.app_session_id:
            return self._sessions.get(event.app_session_id)
        if event.cwd:
            for session in self._sessions.values():
                if session.conversation_id is None and event.cwd in (session.working_directory, session.worktree_path):
                    return session
        return None

    def handle_hook_event(self, event: HookEvent) -> None:
        if event.kind == HookEventKind.SESSION_START:
            session = self._match_conversation_owner(event)
            if session is None or not event.conversation_id:
                logger.debug("Session start hook without a matching session", extra={"cwd": event.cwd})
                return
            session.conversation_id = event.conversation_id
            session.touch()
            self.bus.emit(events.CONVERSATION_CAPTURED, {
                "sessionId": session.id,
                "conversationId": event.conversation_id,
            })
        elif event.kind == HookEventKind.SESSION_END:
            self.bus.emit(events.HOOK_ENDED, {
                "conversationId": event.conversation_id,
                "sessionId": event.app_session_id,
            })
        elif event.kind == HookEventKind.STATUS:
            status = parse_status(event.status or "")
            if status is None or not event.app_session_id:
                logger.debug("Ignoring status report", extra={"status": event.status})
                return
            needs_input = True if status == SessionStatus.NEEDS_INPUT else None
            self.update_status(event.app_session_id, status, event.message, needs_input)
        elif event.kind == HookEventKind.PROCESS_EXIT and event.handle:
            self.handle_process_exit(event.handle, event.exit_code)

    async def cleanup_zombie(self, session_id: str, reason: str) -> bool:
        """Treat a session whose terminal failed its health check as exited."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        handle = session.terminal_handle
        if handle:
            await asyncio.to_thread(self.host.kill, handle)
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.terminal_handle = None
        self.update_status(session_id, SessionStatus.ERROR, ZOMBIE_MESSAGE)
        logger.warning("Cleaned up zombie session", extra={"session_id": session_id, "reason": reason})
        self.bus.emit(events.ZOMBIE_CLEANUP, {"sessionId": session_id, "sessionName": session.name, "reason": reason})
        return True

    # --- Lifecycle ---

    def restore_snapshot(self) -> list[RestoreEntry]:
        return [
            RestoreEntry(
                conversation_id=s.conversation_id,
                repo_path=s.repo_path,
                name=s.name,
                mode=s.ai_mode,
                branch=s.branch,
                worktree_path=s.worktree_path,
            )
            for s in self._sessions.values()
            if s.conversation_id
        ]

    async def shutdown(self) -> None:
        """Persist the restore snapshot, stop watching hooks and kill remaining processes."""
        try:
            await asyncio.to_thread(save_snapshot, self.restore_snapshot(), self.state_dir)
        except OSError as e:
            logger.warning("Failed to save restore snapshot", extra={"error": str(e)})
        self.hooks.stop()
        for session in list(self._sessions.values()):
            if session.terminal_handle:
                result = await asyncio.to_thread(self.host.kill, session.terminal_handle)
                if not result.ok:
                    logger.debug("Failed to kill session on shutdown", extra={"session_id": session.id})
                session.terminal_handle = None
