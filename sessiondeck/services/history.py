import asyncio
import errno
import json
import logging
import sys
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from sessiondeck.constants import (
    CLAUDE_DIR,
    HISTORY_HEAD_LINES,
    HISTORY_SCAN_LIMIT,
    INDEX_DEBOUNCE_MS,
    LOCK_RETRY_DELAY_S,
    PROMPT_EXCERPT_CHARS,
)
from sessiondeck.models import HistoryEntry
from sessiondeck.services.watch import Debouncer, DirectoryWatcher, Disposer, WatcherManager

logger = logging.getLogger(__name__)

INDEX_FILE_NAME = "sessions-index.json"
_LOCK_ERRNOS = {errno.EBUSY, errno.EPERM, errno.EACCES}


def encode_project_path(repo_path: str, windows: bool | None = None) -> str:
    """Directory name the assistant uses for a project under ~/.claude/projects."""
    if windows is None:
        windows = sys.platform == "win32"
    if windows:
        return repo_path.replace(":\\", "--").replace("\\", "-")
    return repo_path.replace("/", "-")


def _watch_key(repo_path: str) -> str:
    return f"history:{repo_path}"

def _iso_from_ms(ms: float) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _first_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text" and part.get("text"):
                return part["text"]
    return ""


def extract_entry(path: Path, mtime_ms: float, repo_path: str) -> HistoryEntry | None:
    """Build a history entry from the first lines of a transcript file."""
    session_id = ""
    git_branch = ""
    first_timestamp = ""
    first_prompt = ""
    is_sidechain = False
    sidechain_seen = False
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for line_no, line in enumerate(f):
                if line_no >= HISTORY_HEAD_LINES:
                    break
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(data, dict):
                    continue
                session_id = session_id or data.get("sessionId") or ""
                git_branch = git_branch or data.get("gitBranch") or ""
                first_timestamp = first_timestamp or data.get("timestamp") or ""
                is_sidechain = is_sidechain or bool(data.get("isSidechain"))
                sidechain_seen = sidechain_seen or "isSidechain" in data
                message = data.get("message")
                if not first_prompt and data.get("type") == "user" and isinstance(message, dict):
                    if message.get("role") == "user":
                        first_prompt = _first_text(message.get("content"))[:PROMPT_EXCERPT_CHARS]
                if session_id and git_branch and first_timestamp and first_prompt and sidechain_seen:
                    break
    except OSError as e:
        logger.debug("Failed to read transcript", extra={"path": str(path), "error": str(e)})
        return None

    modified = _iso_from_ms(mtime_ms)
    return HistoryEntry(
        session_id=session_id or path.stem,
        full_path=str(path),
        file_mtime=mtime_ms,
        first_prompt=first_prompt or "No prompt",
        created=first_timestamp or modified,
        modified=modified,
        git_branch=git_branch,
        project_path=repo_path,
        is_sidechain=is_sidechain,
    )


class HistoryReconciler:
    """Reads the assistant's per-project session history and keeps clients informed of changes."""

    def __init__(self, claude_dir: Path = CLAUDE_DIR, watchers: WatcherManager | None = None) -> None:
        self.claude_dir = claude_dir
        self.watchers = watchers if watchers is not None else WatcherManager()
        self._debouncer = Debouncer()

    def sessions_dir(self, repo_path: str) -> Path:
        return self.claude_dir / "projects" / encode_project_path(repo_path)

    def index_path(self, repo_path: str) -> Path:
        return self.sessions_dir(repo_path) / INDEX_FILE_NAME

    def _read_with_retry(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            if e.errno not in _LOCK_ERRNOS:
                raise
            logger.debug("Sessions index locked, retrying", extra={"path": str(path), "errno": e.errno})
        time.sleep(LOCK_RETRY_DELAY_S)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _read_index_entries(self, path: Path) -> list[HistoryEntry]:
        try:
            content = self._read_with_retry(path)
        except OSError as e:
            logger.warning("Failed to read sessions index", extra={"path": str(path), "error": str(e)})
            return []
        if content is None:
            return []
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse sessions index", extra={"path": str(path), "error": str(e)})
            return []
        if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
            logger.warning("Invalid sessions index format, missing entries", extra={"path": str(path)})
            return []

        entries = []
        for raw in data["entries"]:
            try:
                entries.append(HistoryEntry.model_validate(raw))
            except ValidationError:
                logger.debug("Skipping malformed index entry", extra={"path": str(path)})
        return entries

    def _scan_transcripts(self, sessions_dir: Path, indexed: set[str], repo_path: str) -> list[HistoryEntry]:
        if not sessions_dir.is_dir():
            return []
        candidates: list[tuple[float, Path]] = []
        for path in sessions_dir.glob("*.jsonl"):
            if path.stem in indexed or not path.is_file():
                continue
            try:
                candidates.append((path.stat().st_mtime * 1000, path))
            except OSError:
                continue
        candidates.sort(key=lambda c: c[0], reverse=True)

        entries = []
        for mtime_ms, path in candidates[:HISTORY_SCAN_LIMIT]:
            entry = extract_entry(path, mtime_ms, repo_path)
            if entry is not None:
                entries.append(entry)
        return entries

    def read_index(self, repo_path: str) -> list[HistoryEntry]:
        """Index entries plus transcripts the index does not know about yet, newest first.

        Never raises; unreadable sources count as empty. Blocking.
        """
        index_entries = self._read_index_entries(self.index_path(repo_path))
        indexed = {e.session_id for e in index_entries}
        try:
            scanned = self._scan_transcripts(self.sessions_dir(repo_path), indexed, repo_path)
        except OSError as e:
            logger.warning("Failed to scan transcripts", extra={"repo_path": repo_path, "error": str(e)})
            scanned = []

        merged = [e for e in index_entries + scanned if not e.is_sidechain]
        merged.sort(key=lambda e: e.modified_timestamp(), reverse=True)
        return merged

    def watch(self, repo_path: str, callback: Callable[[list[HistoryEntry]], None]) -> Disposer:
        """Re-read history whenever the index changes. Replaces any watcher for the same repo."""
        key = _watch_key(repo_path)

        async def reload() -> None:
            entries = await asyncio.to_thread(self.read_index, repo_path)
            callback(entries)

        def on_change(_paths: list[Path]) -> None:
            self._debouncer.schedule(key, INDEX_DEBOUNCE_MS, reload)

        watcher = DirectoryWatcher(self.sessions_dir(repo_path), on_change, pattern=INDEX_FILE_NAME)
        watcher.start()
        logger.debug("Watching sessions index", extra={"repo_path": repo_path})

        def dispose() -> None:
            self._debouncer.cancel(key)
            watcher.stop()

        return self.watchers.add(key, dispose)

    def unwatch(self, repo_path: str) -> None:
        self.watchers.remove(_watch_key(repo_path))

    def close(self) -> None:
        self._debouncer.cancel_all()
        self.watchers.close_all()
