"""旧バージョンの設定ディレクトリからの移行。

旧名（unycode / unycoding / ~/.config/multicoder）で作られたディレクトリがあれば
`~/.multicoder` に引き継ぐ。既存のファイルは上書きしない。
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from multicoder.atomic_io import PRIVATE_DIR_MODE, ensure_dir

log = logging.getLogger(__name__)


def legacy_config_dirs(home: Path) -> list[Path]:
    return [
        home / ".unycode",
        home / ".config" / "unycoding",
        home / "AppData" / "Roaming" / "unycoding",
        home / "Library" / "Application Support" / "unycoding",
        home / ".config" / "multicoder",
    ]


def _copy_tree(src: Path, dst: Path) -> None:
    shutil.copytree(src, dst, dirs_exist_ok=True)


def migrate_config_dir(home: Path, target: Path) -> Path | None:
    """旧ディレクトリを target に移す。移行元を返す（何もしなければ None）。"""
    for legacy in legacy_config_dirs(home):
        if legacy == target or not legacy.is_dir():
            continue

        if not target.exists():
            ensure_dir(target.parent, None)
            try:
                os.rename(legacy, target)
            except OSError:
                ensure_dir(target, PRIVATE_DIR_MODE)
                _copy_tree(legacy, target)
            log.info("migrated legacy config dir %s -> %s", legacy, target)
            return legacy

        migrated = False
        legacy_creds = legacy / "credentials"
        target_creds = target / "credentials"
        if legacy_creds.is_dir() and not target_creds.exists():
            ensure_dir(target_creds, PRIVATE_DIR_MODE)
            _copy_tree(legacy_creds, target_creds)
            migrated = True

        legacy_profiles = legacy / "profiles.json"
        target_profiles = target / "profiles.json"
        if legacy_profiles.is_file() and not target_profiles.exists():
            shutil.copy2(legacy_profiles, target_profiles)
            migrated = True

        if migrated:
            log.info("copied legacy credentials/profiles from %s -> %s", legacy, target)
            return legacy
    return None


def migrate_file(source: Path, target: Path, mode: int) -> bool:
    """source があり target が無ければ移す（rename、失敗時はコピー）。"""
    if source == target or not source.exists() or target.exists():
        return False
    ensure_dir(target.parent, PRIVATE_DIR_MODE)
    try:
        os.rename(source, target)
    except OSError:
        try:
            shutil.copyfile(source, target)
        except OSError as e:
            log.warning("legacy file migration failed %s -> %s: %s", source, target, e)
            return False
    if os.name != "nt":
        os.chmod(target, mode)
    log.info("migrated legacy file %s -> %s", source, target)
    return True


def migrate_env_files(home: Path, config_dir: Path) -> None:
    for legacy in legacy_config_dirs(home):
        migrate_file(legacy / "env.sh", config_dir / "env.sh", 0o600)
        migrate_file(legacy / "mac-launchctl-env.sh", config_dir / "mac-launchctl-env.sh", 0o755)
