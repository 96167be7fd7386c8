"""POSIX の env ファイル（`export NAME="value"`）とシェル起動ファイルのブロック。

env ファイルは multicoder が丸ごと管理する: 固定のヘッダ行のあと、変数名順に
1行1つの `export` 行。値はダブルクォートで囲み、バックスラッシュ・ダブルクォート・
`$`・バッククォート・改行（LF / CR）をエスケープする。書いて読めば同じ値に戻り、
読んだ内容を書き直しても同じバイト列になる。

シェル起動ファイル（`.profile`, `.zshrc` など）はユーザーのもの。
センチネルで囲んだブロックの追加と削除だけを行う。
"""

from __future__ import annotations

import re
from pathlib import Path

from multicoder.atomic_io import write_text_atomic

HEADER = "# Managed by multicoder-auth SystemEnvironmentManager"
SENTINEL_BEGIN = "# >>> multicoder-auth env >>>"
SENTINEL_END = "# <<< multicoder-auth env <<<"

_ESCAPES = {"\\": "\\\\", '"': '\\"', "\n": "\\n", "\r": "\\r", "$": "\\$", "`": "\\`"}
_UNESCAPES = {"n": "\n", "r": "\r"}
_UNESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)
_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def is_valid_name(name: str) -> bool:
    return bool(_NAME_RE.match(name))


def escape_value(value: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def unescape_value(raw: str) -> str:
    return _UNESCAPE_RE.sub(lambda m: _UNESCAPES.get(m.group(1), m.group(1)), raw)


def format_export(name: str, value: str) -> str:
    return f'export {name}="{escape_value(value)}"'


def parse_exports(content: str) -> dict[str, str]:
    out: dict[str, str] = {}
    # 値の中の U+2028 などで行を割らないよう LF だけで分ける
    for line in content.split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if not stripped.startswith("export "):
            continue
        body = stripped[len("export ") :]
        key, sep, raw = body.partition("=")
        if not sep:
            continue
        key = key.strip()
        raw = raw.strip()
        if len(raw) >= 2 and raw[0] == raw[-1] == '"':
            value = unescape_value(raw[1:-1])
        elif len(raw) >= 2 and raw[0] == raw[-1] == "'":
            value = raw[1:-1]
        else:
            value = unescape_value(raw)
        out[key] = value
    return out


def render_env_file(env_vars: dict[str, str]) -> str:
    lines = [HEADER]
    for key in sorted(env_vars):
        lines.append(format_export(key, env_vars[key]))
    lines.append("")
    return "\n".join(lines)


def read_env_file(path: Path) -> dict[str, str]:
    try:
        with path.open(encoding="utf-8", newline="") as f:
            content = f.read()
    except (FileNotFoundError, NotADirectoryError):
        return {}
    return parse_exports(content)


def write_env_file(path: Path, env_vars: dict[str, str], *, mode: int = 0o600) -> None:
    write_text_atomic(path, render_env_file(env_vars), mode=mode)


def env_file_reference(env_file: Path, home: Path) -> str:
    """Path of the env file as written into shell startup files (`$HOME/...` when possible)."""
    try:
        rel = env_file.relative_to(home)
    except ValueError:
        return str(env_file)
    return "$HOME/" + rel.as_posix()


def build_shell_block(env_ref: str) -> str:
    return "\n".join(
        [
            SENTINEL_BEGIN,
            f'ENV_FILE="{env_ref}"',
            'if [ -f "$ENV_FILE" ]; then',
            "  # shellcheck disable=SC1090",
            '  . "$ENV_FILE"',
            "fi",
            SENTINEL_END,
        ]
    )


def add_shell_block(path: Path, block: str) -> bool:
    """Append the block unless already present. Returns True when the file changed."""
    if not path.exists():
        write_text_atomic(path, block + "\n", mode=0o600)
        return True

    content = path.read_text(encoding="utf-8")
    if SENTINEL_BEGIN in content:
        return False

    sep = "\n" if content and not content.endswith("\n") else ""
    write_text_atomic(path, f"{content}{sep}{block}\n", mode=_file_mode(path))
    return True


def remove_shell_block(path: Path) -> bool:
    """Strip the block. A file left empty is deleted. Returns True when the file changed."""
    if not path.exists():
        return False

    content = path.read_text(encoding="utf-8")
    start = content.find(SENTINEL_BEGIN)
    if start == -1:
        return False
    end = content.find(SENTINEL_END, start)
    if end == -1:
        return False

    after_end = content.find("\n", end)
    removal_end = len(content) if after_end == -1 else after_end + 1

    before = content[:start].rstrip()
    after = content[removal_end:]
    updated = "\n".join(part for part in (before, after) if part)

    if not updated.strip():
        path.unlink(missing_ok=True)
        return True

    if not updated.endswith("\n"):
        updated += "\n"
    write_text_atomic(path, updated, mode=_file_mode(path))
    return True


def _file_mode(path: Path) -> int:
    try:
        return path.stat().st_mode & 0o777
    except OSError:
        return 0o644
