"""config: multicoder 自体の設定。

設定ファイル: `~/.multicoder/config.toml`（任意）

```toml
[logging]
level = "INFO"

[profiles]
default_permission_mode = "ask"

[oauth]
timeout_seconds = 30
poll_interval_seconds = 0.5

[paths]
gemini_home = ""

[env]
clear_persisted_on_switch = false
```

環境変数:
- `MULTICODER_CONFIG_DIR`: 設定ディレクトリを差し替える（レガシー移行は行わない）
- `GEMINI_HOME_DIR`: `.gemini/` を置くディレクトリ
- `MULTICODER_LOG_LEVEL`: `[logging] level` を上書きする
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

try:
    import tomllib
except ModuleNotFoundError:  # Python < 3.11
    import tomli as tomllib  # type: ignore[no-redef]

CONFIG_DIR_NAME = ".multicoder"
PERMISSION_MODES = ("ask", "allow", "deny")


@dataclass
class OAuthSettings:
    timeout_seconds: float = 30.0
    poll_interval_seconds: float = 0.5


@dataclass
class Settings:
    home: Path
    config_dir: Path
    custom_config_dir: bool = False
    log_level: str = "INFO"
    default_permission_mode: str = "ask"
    gemini_home: Path | None = None
    clear_persisted_on_switch: bool = False
    oauth: OAuthSettings = field(default_factory=OAuthSettings)

    @property
    def credentials_dir(self) -> Path:
        return self.config_dir / "credentials"

    @property
    def profiles_path(self) -> Path:
        return self.config_dir / "profiles.json"

    @property
    def log_dir(self) -> Path:
        return self.config_dir / "logs"


def load_settings(
    path: Path | None = None,
    *,
    home: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """設定を読み込む。ファイルが無ければデフォルト。"""
    env = os.environ if environ is None else environ
    home = home or Path.home()

    override = env.get("MULTICODER_CONFIG_DIR", "").strip()
    config_dir = Path(override).expanduser() if override else home / CONFIG_DIR_NAME

    if path is None:
        path = config_dir / "config.toml"

    raw: dict = {}
    if path.exists():
        raw = tomllib.loads(path.read_text(encoding="utf-8"))

    logging_cfg = raw.get("logging", {})
    profiles_cfg = raw.get("profiles", {})
    oauth_cfg = raw.get("oauth", {})
    paths_cfg = raw.get("paths", {})
    env_cfg = raw.get("env", {})

    permission_mode = str(profiles_cfg.get("default_permission_mode", "ask"))
    if permission_mode not in PERMISSION_MODES:
        permission_mode = "ask"

    gemini_home_raw = env.get("GEMINI_HOME_DIR", "").strip() or str(paths_cfg.get("gemini_home", "")).strip()
    gemini_home = Path(gemini_home_raw).expanduser() if gemini_home_raw else None

    return Settings(
        home=home,
        config_dir=config_dir,
        custom_config_dir=bool(override),
        log_level=env.get("MULTICODER_LOG_LEVEL", "").strip() or str(logging_cfg.get("level", "INFO")),
        default_permission_mode=permission_mode,
        gemini_home=gemini_home,
        clear_persisted_on_switch=bool(env_cfg.get("clear_persisted_on_switch", False)),
        oauth=OAuthSettings(
            timeout_seconds=float(oauth_cfg.get("timeout_seconds", 30)),
            poll_interval_seconds=float(oauth_cfg.get("poll_interval_seconds", 0.5)),
        ),
    )
