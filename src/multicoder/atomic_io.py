"""ファイル書き込みユーティリティ。

永続化するファイルはすべて「一時ファイル → chmod → os.replace」で置き換える。
書き込み途中でプロセスが落ちても元のファイルは壊れない。
"""

from __future__ import annotations

import json
import os
import shutil
import time
from pathlib import Path
from typing import Any

PRIVATE_DIR_MODE = 0o700
PRIVATE_FILE_MODE = 0o600


def now_ms() -> int:
    return int(time.time() * 1000)


def ensure_dir(path: Path, mode: int | None = PRIVATE_DIR_MODE) -> None:
    path.mkdir(parents=True, exist_ok=True)
    if mode is not None and os.name != "nt":
        os.chmod(path, mode)


def write_text_atomic(path: Path, text: str, *, mode: int = PRIVATE_FILE_MODE) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        tmp_path.write_text(text, encoding="utf-8")
        if os.name != "nt":
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


def write_json_atomic(path: Path, data: Any, *, mode: int = PRIVATE_FILE_MODE) -> None:
    write_text_atomic(path, json.dumps(data, ensure_ascii=False, indent=2) + "\n", mode=mode)


def read_json(path: Path) -> Any:
    """JSON を読む。無ければ FileNotFoundError、壊れていれば ValueError。"""
    return json.loads(path.read_text(encoding="utf-8"))


def read_json_object(path: Path) -> dict[str, Any] | None:
    """JSON オブジェクトを読む。存在しない/壊れている/dict でない場合は None。"""
    try:
        data = read_json(path)
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def backup_file(path: Path, *, timestamp_ms: int | None = None) -> Path | None:
    """`<path>.backup.<ms>` にコピーを取る。元ファイルが無ければ None。"""
    if not path.is_file():
        return None
    ts = timestamp_ms if timestamp_ms is not None else now_ms()
    backup_path = path.with_name(f"{path.name}.backup.{ts}")
    shutil.copy2(path, backup_path)
    if os.name != "nt":
        os.chmod(backup_path, PRIVATE_FILE_MODE)
    return backup_path
