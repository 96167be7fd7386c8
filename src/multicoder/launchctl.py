"""macOS: launchctl で GUI アプリにも環境変数を渡す。

- `~/.multicoder/mac-launchctl-env.sh`: env.sh を読み込み `launchctl setenv` する
- `~/Library/LaunchAgents/com.multicoder.env.plist`: ログイン時に上のスクリプトを実行

launchctl の失敗は無視する（既に起動中の GUI アプリには反映されないため）。
"""

from __future__ import annotations

import logging
import plistlib
from dataclasses import dataclass
from pathlib import Path

from multicoder.atomic_io import ensure_dir, write_text_atomic
from multicoder.cli_backend import CommandRunner
from multicoder.env_file import HEADER
from multicoder.errors import ExternalProcessFailureError

log = logging.getLogger(__name__)

LAUNCH_AGENT_LABEL = "com.multicoder.env"
SCRIPT_NAME = "mac-launchctl-env.sh"


def build_launchctl_script(keys: list[str], env_ref: str) -> str:
    lines = [
        "#!/bin/sh",
        HEADER,
        f'ENV_FILE="{env_ref}"',
        'if [ -f "$ENV_FILE" ]; then',
        "  # shellcheck disable=SC1090",
        '  . "$ENV_FILE"',
        "fi",
        "",
    ]
    for key in sorted(keys):
        lines.append(f"launchctl unsetenv {key}")
        lines.append(f'launchctl setenv {key} "${{{key}:-}}"')
    lines += ["exit 0", ""]
    return "\n".join(lines)


def build_launch_agent_plist(script_path: Path) -> str:
    doc = {
        "Label": LAUNCH_AGENT_LABEL,
        "ProgramArguments": ["/bin/sh", str(script_path)],
        "RunAtLoad": True,
    }
    return plistlib.dumps(doc, fmt=plistlib.FMT_XML, sort_keys=False).decode("utf-8")


@dataclass
class LaunchAgent:
    home: Path
    config_dir: Path
    runner: CommandRunner
    uid: int | None = None

    @property
    def script_path(self) -> Path:
        return self.config_dir / SCRIPT_NAME

    @property
    def plist_path(self) -> Path:
        return self.home / "Library" / "LaunchAgents" / f"{LAUNCH_AGENT_LABEL}.plist"

    def _launchctl(self, *args: str) -> None:
        try:
            result = self.runner.run(["launchctl", *args])
        except ExternalProcessFailureError as e:
            log.debug("launchctl %s failed: %s", " ".join(args), e)
            return
        if result.returncode != 0:
            log.debug("launchctl %s exited %s: %s", " ".join(args), result.returncode, result.stderr.strip())

    def write_artifacts(self, env_vars: dict[str, str], env_ref: str) -> None:
        if not env_vars:
            self.cleanup()
            return

        ensure_dir(self.script_path.parent)
        write_text_atomic(self.script_path, build_launchctl_script(list(env_vars), env_ref), mode=0o755)

        ensure_dir(self.plist_path.parent, 0o755)
        write_text_atomic(self.plist_path, build_launch_agent_plist(self.script_path), mode=0o644)

        self.reload()

    def reload(self) -> None:
        if self.uid is None:
            return
        target = f"gui/{self.uid}"
        self._launchctl("bootout", target, str(self.plist_path))
        self._launchctl("bootstrap", target, str(self.plist_path))
        self._launchctl("kickstart", "-k", f"{target}/{LAUNCH_AGENT_LABEL}")

    def cleanup(self) -> None:
        if self.uid is not None:
            self._launchctl("bootout", f"gui/{self.uid}", str(self.plist_path))
            self._launchctl("remove", LAUNCH_AGENT_LABEL)
        self.script_path.unlink(missing_ok=True)
        self.plist_path.unlink(missing_ok=True)

    def setenv(self, name: str, value: str) -> None:
        self._launchctl("setenv", name, value)

    def unsetenv(self, name: str) -> None:
        self._launchctl("unsetenv", name)
