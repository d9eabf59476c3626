import fcntl
import json
import logging
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from sessiondeck.constants import STATE_DIR
from sessiondeck.models import RestoreEntry

logger = logging.getLogger(__name__)

_entries_adapter = TypeAdapter(list[RestoreEntry])


def snapshot_path(state_dir: Path = STATE_DIR) -> Path:
    return state_dir / "restore-snapshot.json"


def save_snapshot(entries: list[RestoreEntry], state_dir: Path = STATE_DIR) -> Path:
    """Write the restore snapshot atomically under an exclusive lock."""
    state_dir.mkdir(parents=True, exist_ok=True)
    path = snapshot_path(state_dir)
    lock_file = path.with_suffix(".lock")
    tmp = path.with_suffix(".tmp")
    payload = json.dumps({"sessions": [e.to_wire() for e in entries]}, indent=2)
    with open(lock_file, "a") as lf:
        fcntl.flock(lf, fcntl.LOCK_EX)
        try:
            tmp.write_text(payload)
            tmp.rename(path)
        finally:
            fcntl.flock(lf, fcntl.LOCK_UN)
    logger.info("Saved restore snapshot", extra={"path": str(path), "count": len(entries)})
    return path


def load_snapshot(state_dir: Path = STATE_DIR, consume: bool = False) -> list[RestoreEntry]:
    """Read the restore snapshot. With consume=True the file is removed after reading."""
    path = snapshot_path(state_dir)
    if not path.exists():
        return []
    lock_file = path.with_suffix(".lock")
    with open(lock_file, "a") as lf:
        fcntl.flock(lf, fcntl.LOCK_EX if consume else fcntl.LOCK_SH)
        try:
            try:
                data = json.loads(path.read_text())
            except (json.JSONDecodeError, OSError):
                logger.warning("Failed to read restore snapshot, ignoring it", extra={"path": str(path)})
                data = {}
            if consume:
                path.unlink(missing_ok=True)
        finally:
            fcntl.flock(lf, fcntl.LOCK_UN)

    try:
        return _entries_adapter.validate_python(data.get("sessions", []) if isinstance(data, dict) else [])
    except ValidationError:
        logger.warning("Invalid restore snapshot, ignoring it", extra={"path": str(path)})
        return []
