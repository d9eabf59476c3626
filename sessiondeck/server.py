"""Real-time client surface.

Clients talk to a single WebSocket at `/ws`. A request is
`{"event": name, "data": {...}, "id": n}` and is answered with
`{"ack": n, "data": ...}`; registry events are pushed to every client as
`{"event": name, "data": {...}}`.
"""

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from sessiondeck.config import ResolvedConfig, load_config
from sessiondeck.constants import HEALTH_CHECK_INTERVAL_S
from sessiondeck.models import AiMode, HistoryEntry, WireModel
from sessiondeck.services import events
from sessiondeck.services.events import EventBus
from sessiondeck.services.health import HealthMonitor
from sessiondeck.services.history import HistoryReconciler
from sessiondeck.services.isolation import decide_isolation
from sessiondeck.services.registry import AdmissionGate, AdmissionRejection, SessionRegistry
from sessiondeck.services.state import load_snapshot
from sessiondeck.services.tmux import TmuxHost
from sessiondeck.services.worktree import WorktreeProvisioner

logger = logging.getLogger(__name__)

Broadcast = Callable[[str, Any], Awaitable[None]]

WIRE_EVENTS = {
    events.SESSION_CREATED: "session:created",
    events.SESSION_STATUS: "session:status",
    events.SESSION_REMOVED: "session:removed",
    events.SESSION_HEALTH: "session:health",
    events.ZOMBIE_CLEANUP: "zombie:cleanup",
    events.HOOK_ENDED: "session:hook-ended",
    events.CONVERSATION_CAPTURED: "session:claude-id-captured",
}


# --- Request payloads ---


class CreatePayload(WireModel):
    mode: AiMode
    repo_path: str
    branch: str | None = None
    name: str | None = None
    work_dir: str | None = None
    model: str | None = None
    system_prompt: str | None = None
    mcp_servers: list[str] | None = None


class SessionUpdates(WireModel):
    name: str | None = None
    mode: AiMode | None = None
    model: str | None = None
    system_prompt: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    mcp_servers: list[str] | None = None


class UpdatePayload(WireModel):
    session_id: str
    updates: SessionUpdates


class SessionIdPayload(WireModel):
    session_id: str


class ListPayload(WireModel):
    repo_path: str | None = None


class ProjectPayload(WireModel):
    repo_path: str


class ResumePayload(WireModel):
    repo_path: str
    conversation_id: str
    branch: str | None = None
    name: str | None = None


class ContinuePayload(WireModel):
    repo_path: str
    branch: str | None = None
    name: str | None = None


class ConnectionManager:
    def __init__(self) -> None:
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, event: str, data: Any) -> None:
        message = {"event": event, "data": data}
        # Copy: failing connections are removed while iterating
        for connection in self.active_connections[:]:
            try:
                await connection.send_json(message)
            except Exception:
                logger.debug("Dropping websocket connection after failed send", exc_info=True)
                self.disconnect(connection)


class SessionGateway:
    """Translates client requests into registry calls and registry events into broadcasts."""

    def __init__(
        self,
        registry: SessionRegistry,
        reconciler: HistoryReconciler,
        gate: AdmissionGate,
        broadcast: Broadcast,
        config: ResolvedConfig | None = None,
        config_for: Callable[[str], ResolvedConfig] | None = None,
    ) -> None:
        self.registry = registry
        self.reconciler = reconciler
        self.gate = gate
        self.config = config or ResolvedConfig()
        self.config_for = config_for or registry.config_for
        self._broadcast = broadcast
        self._tasks: set[asyncio.Task] = set()
        self._handlers: dict[str, Callable[[dict], Awaitable[Any]]] = {
            "session:create": self.handle_create,
            "session:update": self.handle_update,
            "session:remove": self.handle_remove,
            "session:stop": self.handle_stop,
            "session:remove-project": self.handle_remove_project,
            "session:list": self.handle_list,
            "session:history": self.handle_history,
            "session:resume": self.handle_resume,
            "session:fork": self.handle_fork,
            "session:continue-last": self.handle_continue_last,
            "session:get-restore-snapshot": self.handle_restore_snapshot,
        }
        registry.bus.subscribe(self._on_bus_event)

    def _on_bus_event(self, name: str, data: dict[str, Any]) -> None:
        wire_name = WIRE_EVENTS.get(name)
        if wire_name is None:
            return
        self._spawn(self._broadcast(wire_name, data))

    def _spawn(self, coro: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, dropping broadcast")
            coro.close()
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def dispatch(self, event: str, data: Any) -> Any:
        """Run the handler for `event`. Failures are returned as `{"error": ...}`, never raised."""
        handler = self._handlers.get(event)
        if handler is None:
            return {"error": f"Unknown event: {event}"}
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return {"error": "Invalid payload: expected an object"}
        try:
            return await handler(data)
        except ValidationError as e:
            return {"error": f"Invalid payload: {e.errors(include_url=False)}"}
        except Exception as e:
            logger.exception("Handler failed", extra={"event": event})
            return {"error": str(e)}

    async def _create_and_launch(
        self,
        mode: AiMode,
        repo_path: str,
        branch: str | None = None,
        **options: Any,
    ) -> dict[str, Any]:
        reservation = self.gate.try_acquire()
        if isinstance(reservation, AdmissionRejection):
            return reservation.to_wire()
        try:
            config = await asyncio.to_thread(self.config_for, repo_path)
            session = self.registry.create(mode, repo_path, skip_permissions=config.skip_permissions, **options)
            isolation = await asyncio.to_thread(
                decide_isolation, self.registry.provisioner, config, repo_path, branch,
            )
            if self.registry.get(session.id) is None:
                if isolation.worktree_path:
                    await asyncio.to_thread(self.registry.provisioner.cleanup, repo_path, isolation.worktree_path)
                return {"error": f"Session was removed before launch: {session.id}"}
            if isolation.branch:
                self.registry.assign_branch(session.id, isolation.branch, isolation.worktree_path)

            current = self.registry.get(session.id) or session
            work_dir = isolation.worktree_path or current.working_directory
            result = await self.registry.launch(session.id, repo_path, work_dir, mode)
            if not result.success:
                return {"error": result.error or "Failed to launch session"}
            current = self.registry.get(session.id) or session
            return {"session": current.to_wire()}
        finally:
            reservation.release()

    async def handle_create(self, data: dict) -> dict:
        payload = CreatePayload.model_validate(data)
        return await self._create_and_launch(
            payload.mode,
            payload.repo_path,
            payload.branch,
            name=payload.name,
            working_directory=payload.work_dir,
            model=payload.model,
            system_prompt=payload.system_prompt,
            mcp_servers=payload.mcp_servers,
        )

    async def handle_resume(self, data: dict) -> dict:
        payload = ResumePayload.model_validate(data)
        return await self._create_and_launch(
            AiMode.CLAUDE, payload.repo_path, payload.branch,
            name=payload.name, resume_session_id=payload.conversation_id,
        )

    async def handle_fork(self, data: dict) -> dict:
        payload = ResumePayload.model_validate(data)
        return await self._create_and_launch(
            AiMode.CLAUDE, payload.repo_path, payload.branch,
            name=payload.name, fork_session_id=payload.conversation_id,
        )

    async def handle_continue_last(self, data: dict) -> dict:
        payload = ContinuePayload.model_validate(data)
        return await self._create_and_launch(
            AiMode.CLAUDE, payload.repo_path, payload.branch,
            name=payload.name, continue_last_session=True,
        )

    async def handle_update(self, data: dict) -> dict:
        payload = UpdatePayload.model_validate(data)
        changes = payload.updates.model_dump(exclude_none=True)
        if "mode" in changes:
            changes["ai_mode"] = changes.pop("mode")
        session = self.registry.update(payload.session_id, **changes)
        if session is None:
            return {"error": f"Session not found: {payload.session_id}"}
        return {"session": session.to_wire()}

    async def handle_remove(self, data: dict) -> dict:
        payload = SessionIdPayload.model_validate(data)
        if not await self.registry.remove(payload.session_id):
            return {"success": False, "error": f"Session not found: {payload.session_id}"}
        return {"success": True}

    async def handle_stop(self, data: dict) -> dict:
        payload = SessionIdPayload.model_validate(data)
        if not await self.registry.stop(payload.session_id):
            return {"success": False, "error": f"Session not found or not running: {payload.session_id}"}
        return {"success": True}

    async def handle_remove_project(self, data: dict) -> dict:
        """Forget every session of a closed project and stop watching its history."""
        payload = ProjectPayload.model_validate(data)
        removed = await self.registry.remove_for_project(payload.repo_path)
        self.reconciler.unwatch(payload.repo_path)
        logger.info("Closed project", extra={"repo_path": payload.repo_path, "removed": removed})
        return {"success": True, "removed": removed}

    async def handle_list(self, data: dict) -> list[dict]:
        payload = ListPayload.model_validate(data)
        sessions = self.registry.for_project(payload.repo_path) if payload.repo_path else self.registry.all()
        return [s.to_wire() for s in sessions]

    async def handle_history(self, data: dict) -> dict:
        payload = ProjectPayload.model_validate(data)
        repo_path = payload.repo_path
        try:
            entries = await asyncio.to_thread(self.reconciler.read_index, repo_path)
        except Exception as e:
            logger.warning("Failed to read session history", extra={"repo_path": repo_path, "error": str(e)})
            return {"sessions": [], "error": str(e)}

        def on_update(updated: list[HistoryEntry]) -> None:
            self._spawn(self._broadcast("session:history-updated", {
                "repoPath": repo_path,
                "sessions": [e.to_wire() for e in updated],
            }))

        self.reconciler.watch(repo_path, on_update)
        return {"sessions": [e.to_wire() for e in entries]}

    async def handle_restore_snapshot(self, data: dict) -> dict:
        entries = await asyncio.to_thread(load_snapshot, self.registry.state_dir, True)
        return {
            "sessions": [e.to_wire() for e in entries],
            "autoResumeEnabled": self.config.auto_resume_on_restart,
        }


def build_gateway(config: ResolvedConfig, broadcast: Broadcast) -> SessionGateway:
    """Wire the production components together."""
    bus = EventBus()
    host = TmuxHost(exit_dir=config.hook_dir)
    registry = SessionRegistry(host, WorktreeProvisioner(), bus)
    gate = AdmissionGate(registry, config.max_concurrent_sessions)
    return SessionGateway(registry, HistoryReconciler(), gate, broadcast, config=config)


def create_app(
    config: ResolvedConfig | None = None,
    gateway: SessionGateway | None = None,
    manager: ConnectionManager | None = None,
    health_interval_s: float | None = None,
) -> FastAPI:
    config = config or load_config()
    manager = manager or ConnectionManager()
    gateway = gateway or build_gateway(config, manager.broadcast)
    monitor = HealthMonitor(gateway.registry, health_interval_s or HEALTH_CHECK_INTERVAL_S)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        monitor.start()
        logger.info("Session deck started", extra={"host": config.host, "port": config.port})
        yield
        monitor.stop()
        gateway.reconciler.close()
        await gateway.registry.shutdown()
        logger.info("Session deck stopped")

    app = FastAPI(title="sessiondeck", lifespan=lifespan)
    app.state.gateway = gateway
    app.state.manager = manager

    @app.get("/health")
    async def health() -> dict:
        running = await asyncio.to_thread(gateway.registry.running_sessions)
        return {"status": "ok", "sessions": len(gateway.registry.all()), "running": len(running)}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await manager.connect(websocket)
        pending: set[asyncio.Task] = set()

        async def answer(message: dict) -> None:
            data = await gateway.dispatch(str(message["event"]), message.get("data"))
            try:
                await websocket.send_json({"ack": message.get("id"), "data": data})
            except Exception:
                logger.debug("Client went away before the ack was sent", extra={"event": message["event"]})

        try:
            while True:
                try:
                    message = json.loads(await websocket.receive_text())
                except json.JSONDecodeError:
                    message = None
                if not isinstance(message, dict) or "event" not in message:
                    await websocket.send_json({"ack": None, "data": {"error": "Invalid message"}})
                    continue
                task = asyncio.create_task(answer(message))
                pending.add(task)
                task.add_done_callback(pending.discard)
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    return app
