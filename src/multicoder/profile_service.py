"""プロファイル切替のオーケストレーション。

CLI から呼ばれる入口。プロファイル単位で:

1. 衝突しうる環境変数（ANTHROPIC_API_KEY など）を現在のプロセスから外す
2. 紐づいた各プロバイダについて CredentialStore.apply を呼び、ネイティブ形式に書き出す
3. 失敗したプロバイダはエラーとして集め、成功したプロバイダの状態はそのまま残す

プロファイルの作成（API key / ネイティブ / 環境変数 / Claude settings.json から）や
ログイン・ログアウト、managed への移行もここにまとめている。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from multicoder.atomic_io import read_json, read_json_object
from multicoder.config import Settings
from multicoder.credentials import CredentialStore
from multicoder.errors import (
    CredentialNotFoundError,
    InvalidInputError,
    MalformedCredentialFileError,
    MulticoderError,
    ProfileExistsError,
)
from multicoder.format import mask_secret
from multicoder.profile_store import ProfileRecord, ProfileStore, ProviderBinding
from multicoder.provider_base import AuthStatus
from multicoder.provider_registry import ProviderAuthRegistry
from multicoder.system_env import EnvironmentPersistence

log = logging.getLogger(__name__)

# 環境変数 -> プロバイダ（create_profile_from_env / detect_available_env_vars 用）
ENV_VAR_PROVIDERS = {
    "ANTHROPIC_API_KEY": "claude",
    "ANTHROPIC_AUTH_TOKEN": "claude",
    "GOOGLE_API_KEY": "gemini",
    "GEMINI_API_KEY": "gemini",
    "OPENAI_API_KEY": "codex",
    "AZURE_OPENAI_API_KEY": "codex",
}

# 自前のセッションしか読まないので managed にコピーしないプロバイダ
DETECTION_ONLY_PROVIDERS = ("q",)


@dataclass
class SwitchResult:
    profile: ProfileRecord
    applied: list[str] = field(default_factory=list)
    restart_required: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)
    cleared_env_vars: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def needs_restart(self) -> bool:
        return bool(self.restart_required)


@dataclass
class ProviderStatus:
    provider_id: str
    name: str
    bound: bool
    status: AuthStatus
    binding: ProviderBinding | None = None


@dataclass
class MigrationResult:
    migrated: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class ProfileService:
    def __init__(
        self,
        *,
        settings: Settings,
        credential_store: CredentialStore,
        profile_store: ProfileStore,
        env: EnvironmentPersistence,
        registry: ProviderAuthRegistry,
    ) -> None:
        self.settings = settings
        self.credentials = credential_store
        self.profiles = profile_store
        self.env = env
        self.registry = registry

    # --- collaborator surface ---

    def list_profiles(self) -> list[ProfileRecord]:
        return self.profiles.list()

    def get_current_profile(self) -> ProfileRecord | None:
        return self.profiles.get_current()

    def create_profile(
        self,
        name: str,
        *,
        permission_mode: str | None = None,
        model: str | None = None,
    ) -> ProfileRecord:
        return self.profiles.create(name, permission_mode=permission_mode, model=model)

    def delete_profile(self, name: str) -> str | None:
        """プロファイルと、紐づいた全プロバイダの managed レコードを消す。新しい current を返す。"""
        profile = self.profiles.require(name)
        for provider_id in sorted(profile.providers):
            self.credentials.clear(provider_id, name)
            log.info("cleared managed credential provider=%s profile=%s", provider_id, name)
        self.profiles.delete(name)
        return self.profiles.get_current_name()

    def switch_profile(self, name: str) -> SwitchResult:
        profile = self.profiles.require(name)
        if not profile.providers:
            raise InvalidInputError(f"Profile '{name}' does not have any providers configured")

        result = SwitchResult(profile=profile)
        result.cleared_env_vars = self._clear_conflicting_env(result)

        for provider_id in sorted(profile.providers):
            try:
                applied = self.credentials.apply(provider_id, name)
            except (MulticoderError, OSError) as e:
                log.warning("switch %s: %s failed: %s", name, provider_id, e)
                result.errors.append(f"{provider_id}: {e}")
                continue
            result.applied.append(provider_id)
            if applied.needs_restart:
                result.restart_required.append(provider_id)
            result.messages.extend(applied.messages)
            result.warnings.extend(f"{provider_id}: {w}" for w in applied.warnings)

        self.profiles.mark_used(name)
        if result.applied:
            last = self.profiles.get_last_provider(name)
            if last not in profile.providers:
                self.profiles.set_last_provider(name, result.applied[0])
        self.profiles.set_current(name)
        result.profile = self.profiles.require(name)

        log.info(
            "switched to profile %s applied=%s errors=%d",
            name,
            ",".join(result.applied) or "-",
            len(result.errors),
        )
        return result

    def _clear_conflicting_env(self, result: SwitchResult) -> list[str]:
        persist = self.settings.clear_persisted_on_switch
        cleared: list[str] = []
        for var in self.credentials.catalog.conflicting_env_vars():
            if not self.env.environ.get(var):
                continue
            try:
                self.env.remove(var, persist=persist)
            except MulticoderError as e:
                # プロセスからは外せているので切替は続ける
                result.warnings.append(f"Could not remove persisted {var}: {e}")
                self.env.environ.pop(var, None)
            cleared.append(var)

        if cleared:
            result.warnings.append(
                "Cleared conflicting environment variables from this process: " + ", ".join(cleared)
            )
            if not persist:
                result.warnings.append(
                    "They may still be set in your shell or OS; unset them (or restart the terminal) "
                    "so provider CLIs use the profile's credentials."
                )
        return cleared

    # --- profile creation ---

    def _create_then(self, name: str, permission_mode: str | None, model: str | None, fn) -> Any:
        """プロファイルを作ってから fn を呼ぶ。fn が失敗したらプロファイルを消す。"""
        if self.profiles.exists(name):
            raise ProfileExistsError(name)
        self.profiles.create(name, permission_mode=permission_mode, model=model)
        try:
            return fn()
        except (MulticoderError, OSError):
            self.profiles.delete(name)
            raise

    def create_profile_with_api_key(
        self,
        name: str,
        provider_id: str,
        api_key: str,
        *,
        permission_mode: str | None = None,
        model: str | None = None,
        **options: Any,
    ) -> list[str]:
        translator = self.registry.get(provider_id)
        warnings = self._create_then(
            name,
            permission_mode,
            model,
            lambda: translator.login_with_api_key(name, api_key, **options),
        )
        self.profiles.set_last_provider(name, provider_id)
        return warnings

    def create_profile_from_native(
        self,
        name: str,
        provider_id: str,
        *,
        copy_to_managed: bool = True,
        permission_mode: str | None = None,
        model: str | None = None,
    ) -> ProfileRecord:
        translator = self.registry.get(provider_id)
        if provider_id in DETECTION_ONLY_PROVIDERS:
            copy_to_managed = False

        def _bind() -> None:
            if copy_to_managed:
                translator.capture_native(name)
                return
            status = translator.check_auth(name)
            if status.info is None or status.source == "env":
                raise CredentialNotFoundError(provider_id, name)
            translator.bind(
                name,
                source="native",
                path=status.info.location_path,
                expires_at=status.info.expires_at,
            )

        self._create_then(name, permission_mode, model, _bind)
        return self.profiles.set_last_provider(name, provider_id)

    def detect_available_env_vars(self) -> dict[str, str]:
        """設定済みの API key 系環境変数 -> プロバイダ。"""
        return {var: pid for var, pid in ENV_VAR_PROVIDERS.items() if self.env.environ.get(var)}

    def create_profile_from_env(self, env_var: str, profile_name: str | None = None) -> ProfileRecord:
        provider_id = ENV_VAR_PROVIDERS.get(env_var)
        if provider_id is None:
            raise InvalidInputError(f"Unknown environment variable: {env_var}")
        value = self.env.environ.get(env_var)
        if not value:
            raise InvalidInputError(f"Environment variable {env_var} is not set")

        name = profile_name
        if not name:
            name = provider_id
            counter = 1
            while self.profiles.exists(name):
                name = f"{provider_id}-{counter}"
                counter += 1

        def _save() -> None:
            path = self.credentials.save_env_var(provider_id, name, env_var, value)
            self.registry.get(provider_id).bind(name, source="managed", path=path)

        self._create_then(name, None, None, _save)
        log.info("created profile %s from %s", name, env_var)
        return self.profiles.set_last_provider(name, provider_id)

    def create_profile_from_config(self, name: str) -> list[str]:
        """`~/.claude/settings.json` の env（ANTHROPIC_AUTH_TOKEN / ANTHROPIC_BASE_URL）から作る。"""
        if self.profiles.exists(name):
            raise ProfileExistsError(name)
        settings_path = self.settings.home / ".claude" / "settings.json"
        if not settings_path.is_file():
            raise InvalidInputError("Claude settings.json file not found")
        try:
            data = read_json(settings_path)
        except (OSError, ValueError) as e:
            raise MalformedCredentialFileError("claude", settings_path, str(e)) from e

        env = data.get("env") if isinstance(data, dict) else None
        token = env.get("ANTHROPIC_AUTH_TOKEN") if isinstance(env, dict) else None
        if not isinstance(token, str) or not token:
            raise InvalidInputError("No supported API keys found in settings.json")
        base_url = env.get("ANTHROPIC_BASE_URL")
        base_url = base_url if isinstance(base_url, str) and base_url else None

        translator = self.registry.get("claude")
        self._create_then(
            name,
            None,
            None,
            lambda: translator.save_api_key(name, token, base_url=base_url, extra={"importedFrom": "settings.json"}),
        )
        self.profiles.set_last_provider(name, "claude")
        return ["claude"]

    # --- login / logout ---

    def authenticate_with_api_key(self, profile_name: str, provider_id: str, api_key: str, **options: Any) -> list[str]:
        """API key を保存してプロファイルに紐づける。返り値はキー形式の警告。"""
        if not api_key.strip():
            raise InvalidInputError("API key cannot be empty")
        translator = self.registry.get(provider_id)
        warnings = translator.login_with_api_key(profile_name, api_key.strip(), **options)
        self.profiles.set_last_provider(profile_name, provider_id)
        log.info(
            "stored api key provider=%s profile=%s key=%s",
            provider_id,
            profile_name,
            mask_secret(api_key.strip()),
        )
        return warnings

    def login(self, profile_name: str, provider_id: str, option_id: str) -> None:
        translator = self.registry.get(provider_id)
        translator.authenticate(option_id, profile_name)
        self.profiles.set_last_provider(profile_name, provider_id)

    def logout(self, profile_name: str, provider_id: str) -> list[str]:
        self.profiles.require(profile_name)
        messages = self.registry.get(provider_id).logout(profile_name)
        if self.profiles.get_provider_auth(profile_name, provider_id) is not None:
            self.profiles.remove_provider_auth(profile_name, provider_id)
        return messages

    # --- provider bindings ---

    def add_provider(
        self,
        profile_name: str,
        provider_id: str,
        *,
        api_key: str | None = None,
        copy_to_managed: bool = False,
        **options: Any,
    ) -> list[str]:
        profile = self.profiles.require(profile_name)
        if provider_id in profile.providers:
            raise InvalidInputError(f"Provider {provider_id} already exists in profile {profile_name}")
        translator = self.registry.get(provider_id)

        warnings: list[str] = []
        if api_key:
            warnings = translator.login_with_api_key(profile_name, api_key, **options)
        elif copy_to_managed and provider_id not in DETECTION_ONLY_PROVIDERS:
            translator.capture_native(profile_name)
        else:
            status = translator.check_auth(profile_name)
            if status.info is None or status.source == "env":
                raise CredentialNotFoundError(provider_id, profile_name)
            translator.bind(
                profile_name,
                source="native",
                path=status.info.location_path,
                expires_at=status.info.expires_at,
            )

        if not self.profiles.get_last_provider(profile_name):
            self.profiles.set_last_provider(profile_name, provider_id)
        return warnings

    def remove_provider(self, profile_name: str, provider_id: str, *, clear_credentials: bool = True) -> None:
        profile = self.profiles.require(profile_name)
        if provider_id not in profile.providers:
            raise InvalidInputError(f"Provider {provider_id} not found in profile {profile_name}")
        self.profiles.remove_provider_auth(profile_name, provider_id)
        if clear_credentials:
            self.credentials.clear(provider_id, profile_name)

    # --- queries ---

    def has_valid_credentials(self, profile_name: str, provider_id: str | None = None) -> bool:
        profile = self.profiles.get(profile_name)
        if profile is None:
            return False
        provider_ids = [provider_id] if provider_id else sorted(profile.providers)
        for pid in provider_ids:
            if pid not in profile.providers:
                continue
            info = self.credentials.resolve(pid, profile_name)
            if info is not None and self.credentials.is_valid(info):
                return True
        return False

    def get_profile_credential_info(self, profile_name: str) -> dict[str, dict[str, Any]]:
        """表示用。API key は伏せ字にする。"""
        profile = self.profiles.require(profile_name)
        out: dict[str, dict[str, Any]] = {}
        for provider_id, binding in sorted(profile.providers.items()):
            entry: dict[str, Any] = {"binding": binding.to_dict()}
            info = self.credentials.resolve(provider_id, profile_name)
            if info is None:
                entry["source"] = None
                entry["valid"] = False
                out[provider_id] = entry
                continue
            entry.update(
                source=info.source,
                path=str(info.location_path) if info.location_path else None,
                expiresAt=info.expires_at,
                valid=self.credentials.is_valid(info),
            )
            if info.env_var_name:
                entry["envVarName"] = info.env_var_name
            if info.source == "managed" and info.location_path is not None:
                entry.update(_describe_record(read_json_object(info.location_path)))
            out[provider_id] = entry
        return out

    def status(self, profile_name: str | None = None) -> list[ProviderStatus]:
        name = profile_name or self.profiles.get_current_name()
        profile = self.profiles.get(name) if name else None
        rows: list[ProviderStatus] = []
        for translator in self.registry.all():
            binding = profile.providers.get(translator.id) if profile else None
            status = translator.check_auth(name) if name else AuthStatus(info=None, valid=False)
            rows.append(
                ProviderStatus(
                    provider_id=translator.id,
                    name=translator.name,
                    bound=binding is not None,
                    status=status,
                    binding=binding,
                )
            )
        return rows

    # --- migrations ---

    def migrate_env_to_managed(self) -> MigrationResult:
        """credentialSource=env の binding を、現在の環境変数の値で managed に置き換える。"""
        result = MigrationResult()
        for profile in self.profiles.list():
            for provider_id, binding in sorted(profile.providers.items()):
                if binding.credential_source != "env":
                    continue
                descriptor = self.credentials.catalog.get(provider_id)
                found = None
                for var in (descriptor.env_var_primary, descriptor.env_var_alias):
                    value = self.env.get(var) if var else None
                    if value:
                        found = (var, value)
                        break
                if found is None:
                    result.warnings.append(
                        f"{profile.name}/{provider_id}: no environment variable available to migrate"
                    )
                    continue
                path = self.credentials.save_env_var(provider_id, profile.name, found[0], found[1])
                self.registry.get(provider_id).bind(profile.name, source="managed", path=path)
                result.migrated.append(f"{profile.name}/{provider_id}")
        return result

    def migrate_native_to_managed(self) -> MigrationResult:
        """credentialSource=native の binding を、ネイティブファイルのコピーで managed にする。"""
        result = MigrationResult()
        for profile in self.profiles.list():
            for provider_id, binding in sorted(profile.providers.items()):
                if binding.credential_source != "native":
                    continue
                if provider_id in DETECTION_ONLY_PROVIDERS:
                    result.warnings.append(f"{profile.name}/{provider_id}: uses its own session; left as native")
                    continue
                try:
                    self.registry.get(provider_id).capture_native(profile.name)
                except (CredentialNotFoundError, OSError) as e:
                    result.warnings.append(f"{profile.name}/{provider_id}: {e}")
                    continue
                result.migrated.append(f"{profile.name}/{provider_id}")
        return result


def _describe_record(record: dict[str, Any] | None) -> dict[str, Any]:
    if record is None:
        return {"error": "unreadable credential file"}
    details: dict[str, Any] = {}
    if record.get("envVarName"):
        details["envVarName"] = record["envVarName"]
        details["envVarValue"] = mask_secret(str(record.get("envVarValue") or ""))
    if record.get("apiKey"):
        details["hasApiKey"] = True
        details["apiKey"] = mask_secret(str(record["apiKey"]))
    for key in ("baseUrl", "apiKeyType", "useVertexAi", "projectId", "location", "azureResourceName"):
        if key in record:
            details[key] = record[key]
    if record.get("provider"):
        details["apiProvider"] = record["provider"]
    oauth_keys = ("tokens", "claudeAiOauth", "oauth", "access_token", "refresh_token", "accessToken")
    if any(record.get(k) for k in oauth_keys):
        details["hasOAuth"] = True
    if isinstance(record.get("metadata"), dict):
        details["metadata"] = record["metadata"]
    return details
