import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict[str, Any]], None]

SESSION_CREATED = "session.created"
SESSION_STATUS = "session.status"
SESSION_REMOVED = "session.removed"
SESSION_HEALTH = "session.health"
ZOMBIE_CLEANUP = "zombie.cleanup"
HOOK_ENDED = "session.hook-ended"
CONVERSATION_CAPTURED = "session.conversation-captured"


class EventBus:
    """Synchronous in-process fan-out. A failing listener never affects the emitter."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, name: str, data: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(name, data)
            except Exception:
                logger.exception("Event listener failed", extra={"event": name})
