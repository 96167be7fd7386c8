"""プロバイダ認証の共通インターフェース。

各プロバイダ（Claude / Gemini / Codex / Amazon Q）は `ProviderAuthenticator` を実装し、
保存済みの認証情報をそのプロバイダ CLI が読む形式（JSON / .env など）に書き出す。
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from multicoder.atomic_io import now_ms
from multicoder.cli_backend import ProviderCLI
from multicoder.config import Settings
from multicoder.credentials import CredentialInfo, CredentialStore
from multicoder.errors import InvalidInputError
from multicoder.profile_store import ProfileStore, ProviderBinding
from multicoder.provider_config import ProviderDescriptor
from multicoder.records import CredentialPayload
from multicoder.system_env import EnvironmentPersistence

log = logging.getLogger(__name__)


@dataclass
class AuthOption:
    id: str
    label: str
    description: str


@dataclass
class AuthStatus:
    info: CredentialInfo | None
    valid: bool

    @property
    def source(self) -> str | None:
        return self.info.source if self.info else None


@dataclass
class ApplyResult:
    needs_restart: bool = False
    messages: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _run_cli(cli: ProviderCLI) -> int:
    return cli.run()


def _prompt(text: str, *, secret: bool = False, default: str | None = None) -> str:
    if default is None:
        return typer.prompt(text, hide_input=secret)
    return typer.prompt(text, hide_input=secret, default=default, show_default=False)


@dataclass
class ProviderDependencies:
    settings: Settings
    credential_store: CredentialStore
    profile_store: ProfileStore
    env: EnvironmentPersistence
    console: Console = field(default_factory=Console)
    prompt: Callable[..., str] = _prompt
    run_cli: Callable[[ProviderCLI], int] = _run_cli
    sleep: Callable[[float], None] = time.sleep
    monotonic: Callable[[], float] = time.monotonic
    clock: Callable[[], int] = now_ms

    @property
    def home(self) -> Path:
        return self.settings.home


class ProviderAuthenticator(ABC):
    id: str = ""
    name: str = ""

    def __init__(self, deps: ProviderDependencies) -> None:
        self.deps = deps

    @property
    def descriptor(self) -> ProviderDescriptor:
        return self.deps.credential_store.catalog.get(self.id)

    @abstractmethod
    def get_auth_options(self, profile_name: str) -> list[AuthOption]: ...

    @abstractmethod
    def authenticate(self, option_id: str, profile_name: str) -> None: ...

    @abstractmethod
    def apply_credentials(self, profile_name: str, payload: CredentialPayload | None) -> ApplyResult:
        """保存済みの認証情報をネイティブの形式で書き出す。payload=None はネイティブ側をそのまま使う。"""

    def check_auth(self, profile_name: str) -> AuthStatus:
        """副作用なしで現在の認証状態を調べる。"""
        store = self.deps.credential_store
        info = store.resolve(self.id, profile_name)
        if info is not None:
            return AuthStatus(info=info, valid=store.is_valid(info))

        d = self.descriptor
        for name in (d.env_var_primary, d.env_var_alias):
            if name and self.deps.env.environ.get(name):
                env_info = CredentialInfo(source="env", provider_id=self.id, profile_name=profile_name, env_var_name=name)
                return AuthStatus(info=env_info, valid=True)
        return AuthStatus(info=None, valid=False)

    def login_with_api_key(self, profile_name: str, api_key: str, **options: Any) -> list[str]:
        """API key を managed に保存して紐づける。返り値はキー形式の警告。"""
        raise InvalidInputError(f"{self.name} does not support API key login")

    def logout(self, profile_name: str) -> list[str]:
        self.deps.credential_store.clear(self.id, profile_name)
        return [f"Removed managed {self.name} credentials for profile '{profile_name}'"]

    # --- helpers for subclasses ---

    def cli(self, *args: str, windows_suffix: str = "") -> ProviderCLI:
        return ProviderCLI(
            provider_id=self.id,
            command=[self.descriptor.cli_command, *args],
            windows_suffix=windows_suffix,
        )

    def unknown_option(self, option_id: str) -> InvalidInputError:
        return InvalidInputError(f"Unknown auth option for {self.id}: {option_id}")

    def bind(self, profile_name: str, *, source: str, path: Path | None = None, expires_at: int | None = None) -> None:
        profiles = self.deps.profile_store
        if not profiles.exists(profile_name):
            profiles.create(profile_name)
        profiles.set_provider_auth(
            profile_name,
            self.id,
            ProviderBinding(
                credential_source=source,
                credential_path=str(path) if path else None,
                last_auth=self.deps.clock(),
                expires_at=expires_at,
            ),
        )

    def capture_native(self, profile_name: str) -> Path:
        """ネイティブの認証ファイルを managed にコピーしてプロファイルに紐づける。"""
        store = self.deps.credential_store
        managed = store.copy_native_to_managed(self.id, profile_name)
        self.bind(
            profile_name,
            source="managed",
            path=managed,
            expires_at=store.extract_expires_at(self.id, managed),
        )
        return managed

    def save_api_key(
        self,
        profile_name: str,
        api_key: str,
        *,
        base_url: str | None = None,
        extra: dict | None = None,
    ) -> Path:
        path = self.deps.credential_store.save_api_key(self.id, profile_name, api_key, base_url=base_url, extra=extra)
        self.bind(profile_name, source="managed", path=path)
        return path

    def prompt_api_key(self, label: str) -> str:
        value = self.deps.prompt(f"{label}", secret=True).strip()
        if not value:
            raise InvalidInputError("API key cannot be empty")
        return value
