import dataclasses

import pytest

from sessiondeck.models import AiMode, Session
from sessiondeck.services import launcher
from sessiondeck.services.launcher import (
    INTEGRATION_PROMPT,
    MODE_SPECS,
    build_cli_config,
    mode_name,
    resolve_executable,
    shell_config,
)


def _session(**overrides) -> Session:
    fields = {
        "id": "session-1-1",
        "name": "Session 1",
        "working_directory": "/project",
        "repo_path": "/project",
        "ai_mode": AiMode.CLAUDE,
    }
    fields.update(overrides)
    return Session(**fields)


@pytest.fixture()
def no_cli(monkeypatch):
    monkeypatch.setattr(launcher.shutil, "which", lambda name: None)
    mode_spec = dataclasses.replace(MODE_SPECS[AiMode.CLAUDE], known_paths=list)
    monkeypatch.setitem(MODE_SPECS, AiMode.CLAUDE, mode_spec)


@pytest.fixture()
def unix(monkeypatch):
    monkeypatch.setattr(launcher, "_is_windows", lambda: False)


@pytest.fixture()
def windows(monkeypatch):
    monkeypatch.setattr(launcher, "_is_windows", lambda: True)


def test_every_mode_is_registered():
    for mode in AiMode:
        assert mode in MODE_SPECS


def test_mode_names():
    assert mode_name(AiMode.CLAUDE) == "Claude"
    assert mode_name(AiMode.PLAIN) == "Plain Terminal"


class TestResolveExecutable:
    def test_path_lookup_wins(self, monkeypatch, unix):
        monkeypatch.setattr(launcher.shutil, "which", lambda name: f"/bin/{name}" if name == "claude" else None)
        assert resolve_executable("claude", ["/opt/claude"]) == "/bin/claude"

    def test_windows_tries_cmd_then_exe(self, monkeypatch, windows):
        seen = []

        def which(name):
            seen.append(name)
            return "C:\\npm\\claude.exe" if name == "claude.exe" else None

        monkeypatch.setattr(launcher.shutil, "which", which)
        assert resolve_executable("claude", []) == "C:\\npm\\claude.exe"
        assert seen == ["claude", "claude.cmd", "claude.exe"]

    def test_unix_does_not_try_extensions(self, monkeypatch, unix):
        seen = []
        monkeypatch.setattr(launcher.shutil, "which", lambda name: seen.append(name))
        resolve_executable("claude", [])
        assert seen == ["claude"]

    def test_first_existing_known_path(self, monkeypatch, tmp_path, unix):
        monkeypatch.setattr(launcher.shutil, "which", lambda name: None)
        second = tmp_path / "second" / "claude"
        second.parent.mkdir()
        second.touch()
        third = tmp_path / "third" / "claude"
        third.parent.mkdir()
        third.touch()
        known = [str(tmp_path / "missing" / "claude"), str(second), str(third)]
        assert resolve_executable("claude", known) == str(second)

    def test_glob_patterns_are_expanded(self, monkeypatch, tmp_path, unix):
        monkeypatch.setattr(launcher.shutil, "which", lambda name: None)
        installed = tmp_path / "versions" / "node" / "v20.1.0" / "bin" / "claude"
        installed.parent.mkdir(parents=True)
        installed.touch()
        pattern = str(tmp_path / "versions" / "node" / "*" / "bin" / "claude")
        assert resolve_executable("claude", [pattern]) == str(installed)

    def test_falls_back_to_bare_name(self, monkeypatch, tmp_path, unix):
        monkeypatch.setattr(launcher.shutil, "which", lambda name: None)
        assert resolve_executable("claude", [str(tmp_path / "nope")]) == "claude"


class TestShellConfig:
    def test_login_shell(self, monkeypatch, unix):
        monkeypatch.setenv("SHELL", "/bin/zsh")
        cfg = shell_config()
        assert cfg.command == "/bin/zsh"
        assert cfg.args == ["-l"]

    def test_default_shell(self, monkeypatch, unix):
        monkeypatch.delenv("SHELL", raising=False)
        assert shell_config().command == "/bin/bash"

    @pytest.mark.parametrize("shell", ["/bin/sh", "/usr/bin/pwsh", "/usr/local/bin/powershell"])
    def test_no_login_flag_for_simple_shells(self, monkeypatch, unix, shell):
        monkeypatch.setenv("SHELL", shell)
        assert shell_config().args == []

    def test_windows_uses_comspec(self, monkeypatch, windows):
        monkeypatch.setenv("COMSPEC", "C:\\Windows\\System32\\cmd.exe")
        cfg = shell_config()
        assert cfg.command == "C:\\Windows\\System32\\cmd.exe"
        assert cfg.args == []

    def test_windows_default(self, monkeypatch, windows):
        monkeypatch.delenv("COMSPEC", raising=False)
        assert shell_config().command == "cmd.exe"


@pytest.mark.usefixtures("no_cli", "unix")
class TestBuildCliConfig:
    def test_fresh_session(self):
        cfg = build_cli_config(_session(model="opus", system_prompt="Be concise"))
        assert cfg.command == "claude"
        assert cfg.args == [
            "--model", "opus",
            "--system-prompt", "Be concise",
            "--append-system-prompt", INTEGRATION_PROMPT,
        ]

    def test_integration_prompt_always_appended(self):
        assert build_cli_config(_session()).args == ["--append-system-prompt", INTEGRATION_PROMPT]

    def test_skip_permissions_comes_first(self):
        args = build_cli_config(_session(skip_permissions=True, model="opus")).args
        assert args[0] == "--dangerously-skip-permissions"

    def test_resume_suppresses_prompt_flags(self):
        args = build_cli_config(_session(resume_session_id="abc", model="opus", system_prompt="x")).args
        assert args == ["--resume", "abc"]

    def test_fork(self):
        args = build_cli_config(_session(fork_session_id="abc", skip_permissions=True)).args
        assert args == ["--dangerously-skip-permissions", "--resume", "abc", "--fork-session"]

    def test_continue(self):
        args = build_cli_config(_session(continue_last_session=True, system_prompt="x")).args
        assert args == ["--continue"]

    def test_continue_takes_priority(self):
        args = build_cli_config(_session(continue_last_session=True, resume_session_id="abc")).args
        assert args == ["--continue"]

    def test_plain_mode_runs_shell(self, monkeypatch):
        monkeypatch.setenv("SHELL", "/bin/bash")
        cfg = build_cli_config(_session(ai_mode=AiMode.PLAIN, model="opus"))
        assert cfg.command == "/bin/bash"
        assert cfg.args == ["-l"]
