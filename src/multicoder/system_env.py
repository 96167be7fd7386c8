"""環境変数の永続化（Windows / macOS / Linux）。

- Windows: PowerShell の `[Environment]::SetEnvironmentVariable` で User / Machine に保存
- Linux: `~/.multicoder/env.sh`（system: `/etc/profile.d/multicoder.sh`）に export を書き、
  user スコープではシェル起動ファイルに読み込みブロックを差し込む
- macOS: Linux と同じ env.sh + launchctl（user スコープのみ）

`EnvironmentPersistence` は明示的に生成して渡す。現在のプロセスの環境変数も
`environ`（既定は `os.environ`）を通して更新する。
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import MutableMapping
from pathlib import Path

from multicoder.cli_backend import CommandRunner
from multicoder.env_file import (
    add_shell_block,
    build_shell_block,
    env_file_reference,
    is_valid_name,
    read_env_file,
    remove_shell_block,
    write_env_file,
)
from multicoder.errors import (
    ExternalProcessFailureError,
    InvalidInputError,
    UnsupportedPlatformOperationError,
)
from multicoder.launchctl import LaunchAgent

log = logging.getLogger(__name__)

SCOPES = ("user", "system")
SYSTEM_ENV_FILE = Path("/etc/profile.d/multicoder.sh")
LEGACY_SYSTEM_ENV_FILES = (Path("/etc/profile.d/unycode.sh"), Path("/etc/profile.d/unycoding.sh"))

LINUX_SHELL_FILES = (".profile", ".bash_profile", ".bashrc", ".zshrc")
MAC_SHELL_FILES = (".zprofile", ".bash_profile")


def _detect_platform() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    return "linux"


def _escape_powershell(value: str) -> str:
    return value.replace("'", "''")


def _pick_system_env_file() -> Path:
    for candidate in (SYSTEM_ENV_FILE, *LEGACY_SYSTEM_ENV_FILES):
        if candidate.exists():
            return candidate
    return SYSTEM_ENV_FILE


class EnvironmentPersistence:
    def __init__(
        self,
        *,
        home: Path,
        config_dir: Path,
        platform: str | None = None,
        environ: MutableMapping[str, str] | None = None,
        runner: CommandRunner | None = None,
        uid: int | None = None,
        system_env_file: Path | None = None,
    ) -> None:
        self.home = home
        self.config_dir = config_dir
        self.platform = platform or _detect_platform()
        self.environ = os.environ if environ is None else environ
        self.runner = runner or CommandRunner()
        if uid is None and hasattr(os, "getuid"):
            uid = os.getuid()
        self.system_env_file = system_env_file or _pick_system_env_file()
        self.launch_agent = LaunchAgent(home=home, config_dir=config_dir, runner=self.runner, uid=uid)

    @property
    def user_env_file(self) -> Path:
        return self.config_dir / "env.sh"

    def env_file(self, scope: str) -> Path:
        return self.system_env_file if scope == "system" else self.user_env_file

    # --- public API ---

    def get(self, name: str, scope: str = "user", *, prefer_process: bool = True) -> str | None:
        _check_scope(scope)
        if prefer_process and name in self.environ:
            return self.environ[name]
        if self.platform == "windows":
            out = self._powershell(f"[Environment]::GetEnvironmentVariable('{_escape_powershell(name)}', '{_target(scope)}')")
            return out or None
        return read_env_file(self.env_file(scope)).get(name)

    def list(self, scope: str = "user", *, prefer_process: bool = False) -> dict[str, str]:
        """永続化されている変数。prefer_process=True なら現在のプロセス値で上書きした全体。"""
        _check_scope(scope)
        if self.platform == "windows":
            persisted = self._list_windows(scope)
        else:
            persisted = read_env_file(self.env_file(scope))
        if not prefer_process:
            return persisted
        combined = dict(persisted)
        combined.update(self.environ)
        return combined

    def set(
        self,
        name: str,
        value: str,
        scope: str = "user",
        *,
        persist: bool = True,
        update_process: bool = True,
    ) -> None:
        _check_scope(scope)
        if not is_valid_name(name):
            raise InvalidInputError(f"Invalid environment variable name: {name!r}")
        if scope == "system" and self.platform == "macos" and persist:
            raise UnsupportedPlatformOperationError(
                "System scope environment variable persistence is not supported on macOS."
            )

        if update_process:
            self.environ[name] = value
        if not persist:
            return

        if self.platform == "windows":
            self._powershell(
                f"[Environment]::SetEnvironmentVariable('{_escape_powershell(name)}', "
                f"'{_escape_powershell(value)}', '{_target(scope)}')"
            )
            log.info("persisted env var %s (scope=%s, windows)", name, scope)
            return

        path = self.env_file(scope)
        env_vars = read_env_file(path)
        env_vars[name] = value
        write_env_file(path, env_vars, mode=0o644 if scope == "system" else 0o600)
        log.info("persisted env var %s (scope=%s, %s)", name, scope, path)

        if scope == "user":
            self._sync_user_integration(env_vars)
            if self.platform == "macos":
                self.launch_agent.setenv(name, value)

    def remove(
        self,
        name: str,
        scope: str = "user",
        *,
        persist: bool = True,
        update_process: bool = True,
    ) -> None:
        _check_scope(scope)
        if scope == "system" and self.platform == "macos" and persist:
            raise UnsupportedPlatformOperationError(
                "System scope environment variable persistence is not supported on macOS."
            )

        if update_process:
            self.environ.pop(name, None)
        if not persist:
            return

        if self.platform == "windows":
            self._powershell(
                f"[Environment]::SetEnvironmentVariable('{_escape_powershell(name)}', $null, '{_target(scope)}')"
            )
            log.info("removed env var %s (scope=%s, windows)", name, scope)
            return

        path = self.env_file(scope)
        env_vars = read_env_file(path)
        if name in env_vars:
            del env_vars[name]
            if env_vars:
                write_env_file(path, env_vars, mode=0o644 if scope == "system" else 0o600)
            else:
                path.unlink(missing_ok=True)
            log.info("removed env var %s (scope=%s, %s)", name, scope, path)

        if scope == "user":
            self._sync_user_integration(env_vars)
            if self.platform == "macos":
                self.launch_agent.unsetenv(name)

    # --- internals ---

    def _sync_user_integration(self, env_vars: dict[str, str]) -> None:
        targets = MAC_SHELL_FILES if self.platform == "macos" else LINUX_SHELL_FILES
        env_ref = env_file_reference(self.user_env_file, self.home)
        block = build_shell_block(env_ref)
        for file_name in targets:
            shell_file = self.home / file_name
            if env_vars:
                add_shell_block(shell_file, block)
            else:
                remove_shell_block(shell_file)

        if self.platform == "macos":
            if env_vars:
                self.launch_agent.write_artifacts(env_vars, env_ref)
            else:
                self.launch_agent.cleanup()

    def _powershell(self, command: str) -> str:
        result = self.runner.run(["powershell", "-NoProfile", "-NonInteractive", "-Command", command])
        stderr = result.stderr.strip()
        if result.returncode != 0 or stderr:
            raise ExternalProcessFailureError(
                stderr or f"powershell exited with code {result.returncode}",
                returncode=result.returncode,
                stderr=stderr,
            )
        return result.stdout.rstrip("\r\n")

    def _list_windows(self, scope: str) -> dict[str, str]:
        script = (
            f"$vars = [Environment]::GetEnvironmentVariables('{_target(scope)}'); "
            '$vars.GetEnumerator() | ForEach-Object { "{0}={1}" -f $_.Key, $_.Value }'
        )
        output = self._powershell(script)
        out: dict[str, str] = {}
        for line in output.splitlines():
            key, sep, value = line.partition("=")
            if sep and key:
                out[key] = value
        return out


def _check_scope(scope: str) -> None:
    if scope not in SCOPES:
        raise InvalidInputError(f"Invalid scope: {scope!r} (expected user or system)")


def _target(scope: str) -> str:
    return "Machine" if scope == "system" else "User"
