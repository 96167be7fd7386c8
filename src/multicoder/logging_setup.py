"""logging の初期化。

- 詳細ログ: `~/.multicoder/logs/multicoder.log`（0600）
- ユーザー向け出力は CLI 側の rich Console が担当する
- レベルは config.toml の `[logging] level`、`MULTICODER_LOG_LEVEL` で上書き

API key / token はログに出さない。呼び出し側で `format.mask_secret` を使い、
漏れたものも `SecretMaskFilter` が伏せる。
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

from multicoder.atomic_io import PRIVATE_DIR_MODE, PRIVATE_FILE_MODE, ensure_dir
from multicoder.format import mask_secret

LOG_FILE_NAME = "multicoder.log"

_SECRET_RE = re.compile(
    r"sk-ant-[A-Za-z0-9_\-]{8,}"
    r"|sk-[A-Za-z0-9_\-]{16,}"
    r"|AIza[0-9A-Za-z_\-]{16,}"
    r"|ya29\.[0-9A-Za-z_\-.]{8,}"
)


class SecretMaskFilter(logging.Filter):
    """ログ本文に紛れ込んだ API key / OAuth token を伏せる。"""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _SECRET_RE.sub(lambda m: mask_secret(m.group(0)), message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def build_file_handler(log_dir: Path) -> RotatingFileHandler:
    ensure_dir(log_dir, PRIVATE_DIR_MODE)
    log_path = log_dir / LOG_FILE_NAME

    handler = RotatingFileHandler(
        log_path,
        maxBytes=2_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    if os.name != "nt":
        os.chmod(log_path, PRIVATE_FILE_MODE)

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(fmt)
    handler.addFilter(SecretMaskFilter())
    return handler


def setup_logging(*, log_dir: Path, level: str = "INFO") -> None:
    # 既に設定済みなら二重設定しない
    if getattr(setup_logging, "_configured", False):
        return

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.addHandler(build_file_handler(log_dir))

    setup_logging._configured = True  # type: ignore[attr-defined]
