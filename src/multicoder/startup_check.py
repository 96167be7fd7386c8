"""起動時セルフチェック（`multicoder doctor`）。

目的:
- 各プロバイダの CLI が PATH 上にあるかを調べる
- 設定ディレクトリ / credentials ディレクトリの状態を確認する

注意:
- secrets をログに出さない
- 失敗してもコマンド自体は落とさない
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from multicoder.provider_config import ProviderCatalog

log = logging.getLogger(__name__)


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str = ""


def _check_cli(command: str) -> CheckResult:
    """CLI が PATH 上にあるかチェック。"""
    found = shutil.which(command)
    log.info("startup_check: %s_cli=%s", command, "found" if found else "not_found")
    return CheckResult(name=f"{command} CLI", ok=found is not None, detail=found or "not found in PATH")


def _check_private_dir(path: Path) -> CheckResult:
    if not path.exists():
        return CheckResult(name=str(path), ok=True, detail="not created yet")
    if os.name == "nt":
        return CheckResult(name=str(path), ok=True, detail="exists")
    mode = path.stat().st_mode & 0o777
    ok = mode & 0o077 == 0
    return CheckResult(name=str(path), ok=ok, detail=f"mode {mode:o}" + ("" if ok else " (expected 700)"))


def run_startup_check(*, catalog: ProviderCatalog, config_dir: Path) -> list[CheckResult]:
    results = [_check_cli(d.cli_command) for d in catalog.all()]
    results.append(_check_private_dir(config_dir / "credentials"))
    return results
