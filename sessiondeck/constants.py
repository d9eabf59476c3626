import tempfile
from pathlib import Path

STATE_DIR = Path.home() / ".config" / "sdeck"
CENTRAL_WORKTREE_DIR = Path.home() / ".sdeck" / "worktrees"
PROJECT_WORKTREE_DIRNAME = ".worktrees"
CLAUDE_DIR = Path.home() / ".claude"

DEFAULT_HOOK_DIR = Path(tempfile.gettempdir()) / "sdeck-hooks"
HOOK_SCRIPT_NAME = "sdeck-notify.py"

TMUX_SESSION_PREFIX = "sdeck"
POLL_INTERVAL_MS = 200
HOOK_DEBOUNCE_MS = 100
INDEX_DEBOUNCE_MS = 300

MAX_CONCURRENT_SESSIONS = 12

HISTORY_SCAN_LIMIT = 50
HISTORY_HEAD_LINES = 20
PROMPT_EXCERPT_CHARS = 200
LOCK_RETRY_DELAY_S = 0.5

HEALTH_CHECK_INTERVAL_S = 120
OUTPUT_STALE_THRESHOLD_S = 5 * 60
ERROR_STATE_THRESHOLD_S = 2 * 60

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3737
