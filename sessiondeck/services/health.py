import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel

from sessiondeck.constants import ERROR_STATE_THRESHOLD_S, HEALTH_CHECK_INTERVAL_S, OUTPUT_STALE_THRESHOLD_S
from sessiondeck.models import Session, SessionStatus
from sessiondeck.services import events
from sessiondeck.services.registry import SessionRegistry

logger = logging.getLogger(__name__)

WORKING_STATUSES = frozenset({SessionStatus.WORKING, SessionStatus.ACTIVE, SessionStatus.THINKING})


class Health(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


class HealthReport(BaseModel):
    session_id: str
    health: Health
    reason: str | None = None

    def to_wire(self) -> dict:
        data = {"sessionId": self.session_id, "health": self.health.value}
        if self.reason:
            data["reason"] = self.reason
        return data


def classify(session: Session, alive: bool, now: datetime | None = None) -> HealthReport:
    now = now or datetime.now(timezone.utc)
    idle_for = (now - session.last_active_at).total_seconds()
    if not alive:
        return HealthReport(session_id=session.id, health=Health.FAILED, reason="Terminal process not found")
    if session.status == SessionStatus.ERROR and idle_for > ERROR_STATE_THRESHOLD_S:
        return HealthReport(session_id=session.id, health=Health.FAILED, reason="Session stuck in error state")
    if session.status in WORKING_STATUSES and idle_for > OUTPUT_STALE_THRESHOLD_S:
        return HealthReport(session_id=session.id, health=Health.DEGRADED, reason="No activity for 5 minutes")
    return HealthReport(session_id=session.id, health=Health.HEALTHY)


class HealthMonitor:
    """Periodically checks every session with a terminal and cleans up the dead ones."""

    def __init__(self, registry: SessionRegistry, interval_s: float = HEALTH_CHECK_INTERVAL_S) -> None:
        self.registry = registry
        self.interval_s = interval_s
        self._task: asyncio.Task | None = None

    async def check_once(self) -> list[HealthReport]:
        sessions = [s for s in self.registry.all() if s.terminal_handle]
        if not sessions:
            return []
        live = await asyncio.to_thread(self.registry.host.live_handles)

        reports = []
        for session in sessions:
            handle = session.terminal_handle
            if not handle:
                continue
            alive = handle in live
            if not alive and await self.registry.drain_exit_notice(handle):
                continue
            report = classify(session, alive)
            reports.append(report)
            self.registry.bus.emit(events.SESSION_HEALTH, report.to_wire())
            if report.health == Health.FAILED:
                await self.registry.cleanup_zombie(session.id, report.reason or "failed")
        return reports

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self.check_once()
            except Exception:
                logger.exception("Health check failed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
