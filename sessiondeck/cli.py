import logging
import shutil
import sys
from pathlib import Path

import click

from sessiondeck.config import (
    PROJECT_CONFIG_NAME,
    WorktreeLocation,
    WorktreeMode,
    load_config,
    load_toml,
    save_project_config,
)
from sessiondeck.services.history import HistoryReconciler
from sessiondeck.services.hooks import HookBridge
from sessiondeck.services.worktree import WorktreeError, WorktreeProvisioner

_LOG_LEVELS = ["debug", "info", "warning", "error"]
_CHOICES = {
    "worktree.mode": [m.value for m in WorktreeMode],
    "worktree.location": [loc.value for loc in WorktreeLocation],
}


def _check_prerequisites() -> None:
    """Verify tmux is available, exit with a helpful message if not."""
    if not shutil.which("tmux"):
        click.echo("Missing required tool:\n", err=True)
        click.echo("  • tmux: install via brew install tmux (macOS) or apt install tmux (Linux)", err=True)
        sys.exit(1)
    if not shutil.which("claude"):
        click.echo("Warning: claude CLI not found on PATH, known install locations will be searched.", err=True)


def _repo_path(repo: str) -> str:
    return str(Path(repo).expanduser().resolve())


@click.group()
def cli() -> None:
    """Session Deck: run several assistant CLI sessions side by side, one tmux terminal each."""


@cli.command()
@click.option("--host", default=None, help="Interface to bind (default from config)")
@click.option("--port", type=int, default=None, help="Port to listen on (default from config)")
@click.option("--log-level", type=click.Choice(_LOG_LEVELS), default="info", show_default=True)
def serve(host: str | None, port: int | None, log_level: str) -> None:
    """Run the session server (WebSocket at /ws)."""
    _check_prerequisites()
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Lazy import: the server pulls in FastAPI and uvicorn, which CLI-only commands don't need.
    import uvicorn

    from sessiondeck.server import create_app

    config = load_config()
    app = create_app(config)
    uvicorn.run(app, host=host or config.host, port=port or config.port, log_level=log_level)


@cli.command()
@click.argument("repo", type=click.Path(exists=True, file_okay=False))
@click.option("--limit", "-n", type=int, default=20, show_default=True, help="Number of entries to show")
def history(repo: str, limit: int) -> None:
    """List the assistant's past sessions for a repository, newest first."""
    entries = HistoryReconciler().read_index(_repo_path(repo))
    if not entries:
        click.echo("No sessions.")
        return
    for entry in entries[:limit]:
        branch = f" [{entry.git_branch}]" if entry.git_branch else ""
        prompt = entry.first_prompt.replace("\n", " ")
        if len(prompt) > 60:
            prompt = prompt[:57] + "..."
        click.echo(f"{entry.modified}  {entry.session_id}{branch}  {prompt}")


@cli.group()
def hooks() -> None:
    """Manage the session hooks registered in a repository."""


def _bridge() -> HookBridge:
    def _ignore(_event) -> None:
        return None

    return HookBridge(_ignore, load_config().hook_dir)


@hooks.command("install")
@click.argument("repo", type=click.Path(exists=True, file_okay=False))
def hooks_install(repo: str) -> None:
    """Write the notify script and register the session hooks."""
    repo_path = _repo_path(repo)
    if not _bridge().install(repo_path):
        click.echo(f"Failed to register hooks in {repo_path}", err=True)
        raise SystemExit(1)
    click.echo(f"Hooks registered in {repo_path}")


@hooks.command("uninstall")
@click.argument("repo", type=click.Path(exists=True, file_okay=False))
def hooks_uninstall(repo: str) -> None:
    """Remove the session hooks, leaving other hooks untouched."""
    repo_path = _repo_path(repo)
    result = _bridge().uninstall(repo_path)
    if not result.ok:
        click.echo(f"Failed to unregister hooks: {result.error}", err=True)
        raise SystemExit(1)
    click.echo(f"Hooks removed from {repo_path}")


@cli.group()
def worktrees() -> None:
    """Manage the git worktrees sessions run in."""


@worktrees.command("clean")
@click.argument("repo", type=click.Path(exists=True, file_okay=False))
def worktrees_clean(repo: str) -> None:
    """Remove every session worktree of a repository."""
    repo_path = _repo_path(repo)
    base_dir = load_config(Path(repo_path)).worktree_base_dir(repo_path)
    try:
        results = WorktreeProvisioner().cleanup_all(repo_path, base_dir)
    except WorktreeError as e:
        click.echo(str(e), err=True)
        raise SystemExit(1)

    if not results:
        click.echo("No worktrees to remove.")
        return
    failed = 0
    for result in results:
        if result.ok:
            click.echo(f"Removed worktree: {result.target}")
        else:
            failed += 1
            click.echo(f"Failed to remove {result.target}: {result.error}", err=True)
    if failed:
        raise SystemExit(1)


@cli.command()
@click.argument("key", required=False)
@click.argument("value", required=False)
@click.option("--repo", default=".", type=click.Path(exists=True, file_okay=False), help="Repository root")
def config(key: str | None, value: str | None, repo: str) -> None:
    """View or edit project settings (.sdeck.toml).

    With no args: show current config.
    With KEY: show a specific value.
    With KEY VALUE: set a value (e.g. `sdeck config worktree.mode always`).
    """
    repo_root = Path(_repo_path(repo))
    resolved = load_config(repo_root)
    project_cfg = load_toml(repo_root / PROJECT_CONFIG_NAME)

    if key is None:
        click.echo(f"Project: {repo_root}")
        click.echo(f"Config:  {repo_root / PROJECT_CONFIG_NAME}\n")
        click.echo("[worktree]")
        click.echo(f"  mode         = {resolved.worktree_mode.value}")
        click.echo(f"  location     = {resolved.worktree_location.value}")
        click.echo(f"  auto_cleanup = {resolved.auto_cleanup}")
        click.echo("\n[session]")
        click.echo(f"  max_concurrent         = {resolved.max_concurrent_sessions}")
        click.echo(f"  skip_permissions       = {resolved.skip_permissions}")
        click.echo(f"  auto_resume_on_restart = {resolved.auto_resume_on_restart}")
        click.echo("\n[server]")
        click.echo(f"  host = {resolved.host}")
        click.echo(f"  port = {resolved.port}")
        click.echo("\n[hooks]")
        click.echo(f"  drop_dir = {resolved.hook_dir}")
        return

    if "." not in key:
        click.echo("Key must be section.field (e.g. worktree.mode)", err=True)
        raise SystemExit(1)

    section_name, field_name = key.split(".", 1)
    section = getattr(project_cfg, section_name, None)
    if section is None or field_name not in type(section).model_fields:
        click.echo(f"Unknown config key: {key}", err=True)
        raise SystemExit(1)

    if value is None:
        click.echo(getattr(section, field_name))
        return

    field_type = type(getattr(section, field_name))
    try:
        if field_type is bool:
            parsed_value = value.lower() in ("1", "true", "yes", "on")
        elif field_type is int:
            parsed_value = int(value)
        else:
            parsed_value = value
    except ValueError:
        click.echo(f"Invalid value for {key}: {value}", err=True)
        raise SystemExit(1)
    allowed = _CHOICES.get(key)
    if allowed and parsed_value not in allowed:
        click.echo(f"Invalid value for {key}: {value} (choose from {', '.join(allowed)})", err=True)
        raise SystemExit(1)
    setattr(section, field_name, parsed_value)
    path = save_project_config(repo_root, project_cfg)
    click.echo(f"Set {key} = {parsed_value}")
    click.echo(f"Saved to {path}")
