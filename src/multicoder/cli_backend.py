"""CLI backend: 外部コマンド（claude/gemini/codex/q, powershell, launchctl）を呼ぶ。

- `CommandRunner`: 出力をキャプチャして結果を返す（環境変数の永続化用）
- `ProviderCLI`: プロバイダ CLI のログインを標準入出力を継承して実行する

未インストールの場合は ExternalProcessFailureError で案内する。
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass

from multicoder.errors import ExternalProcessFailureError

log = logging.getLogger(__name__)


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""


@dataclass
class CommandRunner:
    timeout_seconds: int = 60

    def run(self, args: list[str]) -> CommandResult:
        try:
            proc = subprocess.run(
                args,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as e:
            raise ExternalProcessFailureError(f"CLI not found: {args[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise ExternalProcessFailureError(f"CLI timed out: {args[0]}") from e
        return CommandResult(returncode=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")


@dataclass
class ProviderCLI:
    """プロバイダ CLI を対話モードで起動する（stdin/stdout/stderr は継承）。"""

    provider_id: str
    command: list[str]
    env: dict[str, str] | None = None
    windows_suffix: str = ""

    def argv(self) -> list[str]:
        head = self.command[0]
        if os.name == "nt" and self.windows_suffix and not head.endswith(self.windows_suffix):
            head = head + self.windows_suffix
        return [head, *self.command[1:]]

    def run(self) -> int:
        argv = self.argv()
        log.info("running provider CLI: %s", " ".join(argv))
        try:
            proc = subprocess.run(argv, env=self.env, check=False)
        except FileNotFoundError as e:
            raise ExternalProcessFailureError(
                f"CLI not found: {argv[0]}. Install the {self.provider_id} CLI and make sure it is on PATH.",
                provider_id=self.provider_id,
            ) from e

        if proc.returncode != 0:
            raise ExternalProcessFailureError(
                f"{argv[0]} exited with code {proc.returncode}",
                provider_id=self.provider_id,
                returncode=proc.returncode,
            )
        return proc.returncode
