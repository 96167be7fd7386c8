"""プロバイダ定義（ネイティブ認証ファイルの場所・環境変数名）。

起動時に home を与えて一度だけ組み立て、以後は変更しない。
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from multicoder.errors import UnknownProviderError

PROVIDER_IDS = ("claude", "gemini", "codex", "q")


@dataclass(frozen=True)
class ProviderDescriptor:
    provider_id: str
    display_name: str
    cli_command: str
    native_credential_path: Path | None = None
    env_var_primary: str | None = None
    env_var_alias: str | None = None
    supports_api_key: bool = False
    supports_oauth: bool = False
    oauth_cache_dir: Path | None = None
    conflicting_env_vars: tuple[str, ...] = ()


def default_descriptors(home: Path, *, gemini_home: Path | None = None) -> dict[str, ProviderDescriptor]:
    gemini_root = gemini_home or home
    return {
        "claude": ProviderDescriptor(
            provider_id="claude",
            display_name="Claude",
            cli_command="claude",
            native_credential_path=home / ".claude" / ".credentials.json",
            env_var_primary="ANTHROPIC_API_KEY",
            env_var_alias="ANTHROPIC_AUTH_TOKEN",
            supports_api_key=True,
            supports_oauth=True,
            conflicting_env_vars=("ANTHROPIC_API_KEY", "ANTHROPIC_AUTH_TOKEN"),
        ),
        "gemini": ProviderDescriptor(
            provider_id="gemini",
            display_name="Gemini",
            cli_command="gemini",
            native_credential_path=gemini_root / ".gemini" / "oauth_creds.json",
            env_var_primary="GOOGLE_API_KEY",
            env_var_alias="GEMINI_API_KEY",
            supports_api_key=True,
            supports_oauth=True,
            conflicting_env_vars=("GOOGLE_API_KEY", "GEMINI_API_KEY"),
        ),
        "codex": ProviderDescriptor(
            provider_id="codex",
            display_name="Codex",
            cli_command="codex",
            native_credential_path=home / ".codex" / "auth.json",
            env_var_primary="OPENAI_API_KEY",
            env_var_alias="AZURE_OPENAI_API_KEY",
            supports_api_key=True,
            supports_oauth=True,
            conflicting_env_vars=("OPENAI_API_KEY", "AZURE_OPENAI_API_KEY"),
        ),
        "q": ProviderDescriptor(
            provider_id="q",
            display_name="Amazon Q",
            cli_command="q",
            native_credential_path=home / ".aws" / "credentials",
            supports_api_key=False,
            supports_oauth=True,
            oauth_cache_dir=home / ".aws" / "sso" / "cache",
            conflicting_env_vars=("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN"),
        ),
    }


class ProviderCatalog:
    """provider_id -> ProviderDescriptor。未知の id は UnknownProviderError。"""

    def __init__(self, descriptors: dict[str, ProviderDescriptor]) -> None:
        self._descriptors = dict(descriptors)

    @classmethod
    def for_home(cls, home: Path, *, gemini_home: Path | None = None) -> ProviderCatalog:
        return cls(default_descriptors(home, gemini_home=gemini_home))

    def get(self, provider_id: str) -> ProviderDescriptor:
        try:
            return self._descriptors[provider_id]
        except KeyError:
            raise UnknownProviderError(provider_id) from None

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._descriptors

    def all(self) -> list[ProviderDescriptor]:
        return list(self._descriptors.values())

    def conflicting_env_vars(self) -> list[str]:
        names: list[str] = []
        for d in self._descriptors.values():
            for n in d.conflicting_env_vars:
                if n not in names:
                    names.append(n)
        return names
