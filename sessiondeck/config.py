"""Configuration loading.

Reads `.sdeck.toml` (project-level) and `~/.config/sdeck/config.toml` (global),
merges them, and fills missing values with defaults.
"""

import tomllib
from enum import Enum
from pathlib import Path

from pydantic import BaseModel

from sessiondeck.constants import (
    CENTRAL_WORKTREE_DIR,
    DEFAULT_HOOK_DIR,
    DEFAULT_HOST,
    DEFAULT_PORT,
    MAX_CONCURRENT_SESSIONS,
    PROJECT_WORKTREE_DIRNAME,
    STATE_DIR,
)

PROJECT_CONFIG_NAME = ".sdeck.toml"
_SECTIONS = ("worktree", "session", "server", "hooks")


class WorktreeMode(str, Enum):
    NEVER = "never"
    ALWAYS = "always"
    BRANCH = "branch"


class WorktreeLocation(str, Enum):
    PROJECT = "project"
    CENTRAL = "central"


class WorktreeConfig(BaseModel):
    mode: str = ""
    location: str = ""
    auto_cleanup: bool = False


class SessionConfig(BaseModel):
    max_concurrent: int = 0
    skip_permissions: bool = False
    auto_resume_on_restart: bool = False


class ServerConfig(BaseModel):
    host: str = ""
    port: int = 0


class HooksConfig(BaseModel):
    drop_dir: str = ""


class DeckConfig(BaseModel):
    worktree: WorktreeConfig = WorktreeConfig()
    session: SessionConfig = SessionConfig()
    server: ServerConfig = ServerConfig()
    hooks: HooksConfig = HooksConfig()


class ResolvedConfig(BaseModel):
    """Flat config with all values guaranteed filled."""

    repo_root: Path | None = None
    worktree_mode: WorktreeMode = WorktreeMode.BRANCH
    worktree_location: WorktreeLocation = WorktreeLocation.PROJECT
    auto_cleanup: bool = False
    max_concurrent_sessions: int = MAX_CONCURRENT_SESSIONS
    skip_permissions: bool = False
    auto_resume_on_restart: bool = False
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    hook_dir: Path = DEFAULT_HOOK_DIR

    def worktree_base_dir(self, repo_path: Path | str) -> Path:
        if self.worktree_location == WorktreeLocation.CENTRAL:
            return CENTRAL_WORKTREE_DIR
        return Path(repo_path) / PROJECT_WORKTREE_DIRNAME


def save_project_config(repo_root: Path, config: DeckConfig) -> Path:
    """Save project-level .sdeck.toml. Returns the path written."""
    path = repo_root / PROJECT_CONFIG_NAME
    lines: list[str] = []
    for section_name in _SECTIONS:
        section = getattr(config, section_name)
        section_lines: list[str] = []
        for field_name, field_info in type(section).model_fields.items():
            value = getattr(section, field_name)
            default = field_info.default
            if value != default:
                section_lines.append(f"{field_name} = {_toml_value(value)}")
        if section_lines:
            lines.append(f"[{section_name}]")
            lines.extend(section_lines)
            lines.append("")
    path.write_text("\n".join(lines) + "\n" if lines else "")
    return path


def _toml_value(value: object) -> str:
    """Format a Python value as TOML."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        items = ", ".join(f'"{_escape_toml_str(v)}"' for v in value)
        return f"[{items}]"
    if isinstance(value, str):
        return f'"{_escape_toml_str(value)}"'
    return str(value)


def _escape_toml_str(s: str) -> str:
    return s.replace("\\", "\\\\").replace('"', '\\"')


def load_toml(path: Path) -> DeckConfig:
    if not path.exists():
        return DeckConfig()
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return DeckConfig.model_validate(data)


def _merge_configs(project: DeckConfig, global_: DeckConfig) -> DeckConfig:
    """Merge project over global. Non-default project values win."""
    merged = DeckConfig()
    for section in _SECTIONS:
        proj_section = getattr(project, section)
        glob_section = getattr(global_, section)
        merged_section = getattr(merged, section)
        for field_name in type(proj_section).model_fields:
            proj_val = getattr(proj_section, field_name)
            glob_val = getattr(glob_section, field_name)
            default_val = type(merged_section).model_fields[field_name].default
            if proj_val != default_val:
                setattr(merged_section, field_name, proj_val)
            elif glob_val != default_val:
                setattr(merged_section, field_name, glob_val)
    return merged


def global_config_path() -> Path:
    return STATE_DIR / "config.toml"


def load_config(repo_path: Path | str | None = None) -> ResolvedConfig:
    """Load and resolve configuration.

    Args:
        repo_path: Optional repository whose `.sdeck.toml` overrides the
            global config. Server-wide values (host, port, session limit) are
            normally read without one.
    """
    global_cfg = load_toml(global_config_path())
    project_cfg = load_toml(Path(repo_path) / PROJECT_CONFIG_NAME) if repo_path else DeckConfig()
    merged = _merge_configs(project_cfg, global_cfg)

    return ResolvedConfig(
        repo_root=Path(repo_path) if repo_path else None,
        worktree_mode=WorktreeMode(merged.worktree.mode or WorktreeMode.BRANCH.value),
        worktree_location=WorktreeLocation(merged.worktree.location or WorktreeLocation.PROJECT.value),
        auto_cleanup=merged.worktree.auto_cleanup,
        max_concurrent_sessions=merged.session.max_concurrent or MAX_CONCURRENT_SESSIONS,
        skip_permissions=merged.session.skip_permissions,
        auto_resume_on_restart=merged.session.auto_resume_on_restart,
        host=merged.server.host or DEFAULT_HOST,
        port=merged.server.port or DEFAULT_PORT,
        hook_dir=Path(merged.hooks.drop_dir) if merged.hooks.drop_dir else DEFAULT_HOOK_DIR,
    )
