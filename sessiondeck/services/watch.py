"""Owned timers and file watchers.

Everything here is tied to the running asyncio loop and must be cancelled
explicitly; `WatcherManager.close_all` and `Debouncer.cancel_all` are what the
registry calls on shutdown.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from sessiondeck.constants import POLL_INTERVAL_MS

logger = logging.getLogger(__name__)

Disposer = Callable[[], None]


class Debouncer:
    """Keyed trailing-edge debounce: rescheduling a key cancels its pending call."""

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> set[str]:
        return set(self._pending)

    def schedule(self, key: str, delay_ms: int, callback: Callable[..., Any], *args: Any) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._pending[key] = loop.call_later(delay_ms / 1000, self._fire, key, callback, args)

    def _fire(self, key: str, callback: Callable[..., Any], args: tuple) -> None:
        self._pending.pop(key, None)
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Debounced callback failed", extra={"key": key})
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Debounced task failed", exc_info=task.exception())

    def cancel(self, key: str) -> None:
        handle = self._pending.pop(key, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()


FileStamp = tuple[int, int]


def _scan(directory: Path, pattern: str) -> dict[Path, FileStamp]:
    if not directory.is_dir():
        return {}
    stamps: dict[Path, FileStamp] = {}
    for path in directory.glob(pattern):
        try:
            st = path.stat()
        except OSError:
            # Deleted between glob and stat
            continue
        stamps[path] = (st.st_mtime_ns, st.st_size)
    return stamps


class DirectoryWatcher:
    """Polls a directory and reports files that appeared or changed since the last poll."""

    def __init__(
        self,
        directory: Path,
        on_change: Callable[[list[Path]], None],
        pattern: str = "*",
        interval_ms: int = POLL_INTERVAL_MS,
        report_existing: bool = False,
    ) -> None:
        self.directory = directory
        self.pattern = pattern
        self.interval_ms = interval_ms
        self._on_change = on_change
        self._report_existing = report_existing
        self._seen: dict[Path, FileStamp] | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def poll_once(self) -> list[Path]:
        """Scan once and return the new or modified files. Blocking."""
        current = _scan(self.directory, self.pattern)
        if self._seen is None and not self._report_existing:
            self._seen = current
            return []
        previous = self._seen or {}
        self._seen = current
        return sorted(p for p, stamp in current.items() if previous.get(p) != stamp)

    async def _run(self) -> None:
        while True:
            try:
                changed = await asyncio.to_thread(self.poll_once)
                if changed:
                    self._on_change(changed)
            except Exception:
                logger.exception("Directory poll failed", extra={"directory": str(self.directory)})
            await asyncio.sleep(self.interval_ms / 1000)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


class WatcherManager:
    """Disposers keyed by owner. Adding a key again disposes the previous watcher first."""

    def __init__(self) -> None:
        self._disposers: dict[str, Disposer] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._disposers

    def __len__(self) -> int:
        return len(self._disposers)

    def add(self, key: str, disposer: Disposer) -> Disposer:
        self.remove(key)
        self._disposers[key] = disposer

        def dispose() -> None:
            if self._disposers.get(key) is disposer:
                self.remove(key)

        return dispose

    def remove(self, key: str) -> None:
        disposer = self._disposers.pop(key, None)
        if disposer is None:
            return
        try:
            disposer()
        except Exception:
            logger.exception("Failed to dispose watcher", extra={"key": key})

    def close_all(self) -> None:
        for key in list(self._disposers):
            self.remove(key)
