"""EnvironmentPersistence（Linux / macOS / Windows）。実際の PowerShell / launchctl は呼ばない。"""

import os
import plistlib
from pathlib import Path

import pytest

from multicoder.cli_backend import CommandResult
from multicoder.env_file import SENTINEL_BEGIN, read_env_file
from multicoder.errors import ExternalProcessFailureError, InvalidInputError, UnsupportedPlatformOperationError
from multicoder.launchctl import LAUNCH_AGENT_LABEL
from multicoder.system_env import EnvironmentPersistence

from conftest import FakeRunner


def _persistence(tmp_path: Path, platform: str, runner: FakeRunner | None = None, **kw) -> EnvironmentPersistence:
    home = tmp_path / "home"
    home.mkdir(exist_ok=True)
    return EnvironmentPersistence(
        home=home,
        config_dir=home / ".multicoder",
        platform=platform,
        environ=kw.pop("environ", {}),
        runner=runner or FakeRunner(),
        uid=kw.pop("uid", 501),
        system_env_file=kw.pop("system_env_file", tmp_path / "profile.d" / "multicoder.sh"),
    )


def test_linux_set_writes_env_file_and_shell_blocks(tmp_path: Path) -> None:
    env = _persistence(tmp_path, "linux")
    env.set("FOO", 'bar "baz"')

    assert env.environ["FOO"] == 'bar "baz"'
    assert read_env_file(env.user_env_file) == {"FOO": 'bar "baz"'}
    for name in (".profile", ".bash_profile", ".bashrc", ".zshrc"):
        assert SENTINEL_BEGIN in (env.home / name).read_text(encoding="utf-8")
    if os.name != "nt":
        assert env.user_env_file.stat().st_mode & 0o777 == 0o600

    assert env.get("FOO", prefer_process=False) == 'bar "baz"'
    assert env.list() == {"FOO": 'bar "baz"'}


def test_linux_remove_last_var_cleans_up(tmp_path: Path) -> None:
    env = _persistence(tmp_path, "linux")
    env.set("FOO", "1")
    env.remove("FOO")

    assert "FOO" not in env.environ
    assert not env.user_env_file.exists()
    assert not (env.home / ".bashrc").exists()


def test_linux_remove_keeps_other_vars(tmp_path: Path) -> None:
    env = _persistence(tmp_path, "linux")
    env.set("A", "1")
    env.set("B", "2")
    env.remove("A")

    assert read_env_file(env.user_env_file) == {"B": "2"}
    assert SENTINEL_BEGIN in (env.home / ".zshrc").read_text(encoding="utf-8")


def test_persist_and_process_flags(tmp_path: Path) -> None:
    env = _persistence(tmp_path, "linux")

    env.set("ONLY_PROCESS", "x", persist=False)
    assert env.environ["ONLY_PROCESS"] == "x"
    assert not env.user_env_file.exists()

    env.set("ONLY_DISK", "y", update_process=False)
    assert "ONLY_DISK" not in env.environ
    assert env.get("ONLY_DISK") == "y"


def test_linux_system_scope(tmp_path: Path) -> None:
    system_file = tmp_path / "profile.d" / "multicoder.sh"
    env = _persistence(tmp_path, "linux", system_env_file=system_file)
    env.set("SYS", "1", scope="system")

    assert read_env_file(system_file) == {"SYS": "1"}
    assert not (env.home / ".bashrc").exists()
    if os.name != "nt":
        assert system_file.stat().st_mode & 0o777 == 0o644


def test_invalid_name_and_scope(tmp_path: Path) -> None:
    env = _persistence(tmp_path, "linux")
    with pytest.raises(InvalidInputError):
        env.set("1BAD", "x")
    with pytest.raises(InvalidInputError):
        env.set("GOOD", "x", scope="global")


def test_macos_system_scope_unsupported(tmp_path: Path) -> None:
    env = _persistence(tmp_path, "macos")
    with pytest.raises(UnsupportedPlatformOperationError):
        env.set("FOO", "1", scope="system")
    with pytest.raises(UnsupportedPlatformOperationError):
        env.remove("FOO", scope="system")


def test_macos_user_scope_registers_launch_agent(tmp_path: Path) -> None:
    runner = FakeRunner()
    env = _persistence(tmp_path, "macos", runner=runner)
    env.set("FOO", "bar")

    script = env.launch_agent.script_path
    plist_path = env.launch_agent.plist_path
    assert script.exists()
    assert 'launchctl setenv FOO "${FOO:-}"' in script.read_text(encoding="utf-8")
    plist = plistlib.loads(plist_path.read_bytes())
    assert plist["Label"] == LAUNCH_AGENT_LABEL
    assert plist["ProgramArguments"] == ["/bin/sh", str(script)]

    assert SENTINEL_BEGIN in (env.home / ".zprofile").read_text(encoding="utf-8")
    assert not (env.home / ".bashrc").exists()
    assert ["launchctl", "bootstrap", "gui/501", str(plist_path)] in runner.calls
    assert ["launchctl", "setenv", "FOO", "bar"] in runner.calls

    env.remove("FOO")
    assert not plist_path.exists()
    assert not script.exists()
    assert ["launchctl", "unsetenv", "FOO"] in runner.calls


def test_macos_launchctl_failure_is_ignored(tmp_path: Path) -> None:
    runner = FakeRunner(CommandResult(returncode=5, stderr="boom"))
    env = _persistence(tmp_path, "macos", runner=runner)
    env.set("FOO", "bar")
    assert read_env_file(env.user_env_file) == {"FOO": "bar"}


def test_windows_set_uses_powershell(tmp_path: Path) -> None:
    runner = FakeRunner()
    env = _persistence(tmp_path, "windows", runner=runner)
    env.set("FOO", "it's", scope="system")

    assert len(runner.calls) == 1
    args = runner.calls[0]
    assert args[0] == "powershell"
    assert args[-1] == "[Environment]::SetEnvironmentVariable('FOO', 'it''s', 'Machine')"
    assert env.environ["FOO"] == "it's"
    assert not env.user_env_file.exists()


def test_windows_remove_and_get(tmp_path: Path) -> None:
    runner = FakeRunner(CommandResult(returncode=0, stdout="value\r\n"))
    env = _persistence(tmp_path, "windows", runner=runner)

    assert env.get("FOO", prefer_process=False) == "value"
    env.remove("FOO")
    assert runner.calls[-1][-1] == "[Environment]::SetEnvironmentVariable('FOO', $null, 'User')"


def test_windows_list_parses_output(tmp_path: Path) -> None:
    runner = FakeRunner(CommandResult(returncode=0, stdout="A=1\r\nB=x=y\r\n"))
    env = _persistence(tmp_path, "windows", runner=runner)
    assert env.list() == {"A": "1", "B": "x=y"}


def test_windows_failure_surfaces(tmp_path: Path) -> None:
    runner = FakeRunner(CommandResult(returncode=1, stderr="Access denied"))
    env = _persistence(tmp_path, "windows", runner=runner)
    with pytest.raises(ExternalProcessFailureError) as ei:
        env.set("FOO", "1", scope="system")
    assert "Access denied" in str(ei.value)
    assert ei.value.returncode == 1
