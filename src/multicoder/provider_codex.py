"""Codex: `~/.codex/auth.json`。

managed レコードの中身で書き方を変える:
- `tokens.access_token` / `tokens.id_token` があれば OAuth。そのままコピーする（既存ファイルは退避）
- `apiKey` があれば `{"type": "api-key", ...}` を書く。Azure はデプロイ URL も書く

OPENAI_API_KEY などがシェル側で設定されているとファイルより優先されるので警告する。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from multicoder.atomic_io import backup_file, read_json, write_json_atomic, write_text_atomic
from multicoder.codex_env import (
    clear_codex_environment,
    compute_azure_base_url,
    conflicting_codex_env,
    to_codex_env_config,
)
from multicoder.credentials import CredentialInfo
from multicoder.errors import (
    CredentialNotFoundError,
    ExternalProcessFailureError,
    InvalidInputError,
    MalformedCredentialFileError,
)
from multicoder.provider_base import ApplyResult, AuthOption, AuthStatus, ProviderAuthenticator
from multicoder.records import ApiKeyPayload, CredentialPayload, EnvVarPayload, OAuthPayload

log = logging.getLogger(__name__)

TOKEN_FIELDS = (
    "sessionKey",
    "session_key",
    "accessToken",
    "access_token",
    "id_token",
    "token",
    "authToken",
    "OPENAI_API_KEY",
    "apiKey",
)


def api_key_format_warning(api_key: str) -> str | None:
    if api_key.startswith("sk-"):
        return None
    return 'OpenAI API keys typically start with "sk-"; the key format may be incorrect'


def has_token(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    tokens = data.get("tokens")
    source = tokens if isinstance(tokens, dict) else data
    return any(source.get(f) for f in TOKEN_FIELDS) or any(data.get(f) for f in TOKEN_FIELDS)


class CodexAuthenticator(ProviderAuthenticator):
    id = "codex"
    name = "OpenAI Codex"

    @property
    def codex_dir(self) -> Path:
        return self.deps.home / ".codex"

    @property
    def auth_path(self) -> Path:
        return self.codex_dir / "auth.json"

    def candidate_paths(self) -> list[Path]:
        return [self.auth_path, self.codex_dir / "credentials", self.codex_dir / "credentials.json"]

    def find_native(self) -> Path | None:
        for path in self.candidate_paths():
            try:
                data = read_json(path)
            except (OSError, ValueError):
                continue
            if has_token(data):
                return path
        return None

    def get_auth_options(self, profile_name: str) -> list[AuthOption]:
        options: list[AuthOption] = []
        if self.find_native() is not None:
            options.append(AuthOption("use-existing", "Use existing credentials", "Already authenticated with Codex"))
        options += [
            AuthOption("oauth", "Browser login (OAuth)", "Open browser to authenticate with Codex"),
            AuthOption("api-key", "OpenAI API key", "Enter OPENAI_API_KEY (optional base URL)"),
            AuthOption("azure-api-key", "Azure OpenAI API key", "Enter the Azure OpenAI key and resource name"),
        ]
        return options

    def check_auth(self, profile_name: str) -> AuthStatus:
        status = super().check_auth(profile_name)
        if status.info is not None:
            return status
        native = self.find_native()
        if native is None:
            return status
        info = CredentialInfo(
            source="native",
            provider_id=self.id,
            profile_name=profile_name,
            location_path=native,
            expires_at=self.deps.credential_store.extract_expires_at(self.id, native),
        )
        return AuthStatus(info=info, valid=self.deps.credential_store.is_valid(info))

    # --- login ---

    def authenticate(self, option_id: str, profile_name: str) -> None:
        if option_id == "use-existing":
            if self.find_native() is None:
                raise CredentialNotFoundError(self.id, profile_name)
            self.capture_native(profile_name)
        elif option_id == "oauth":
            self.deps.console.print("ブラウザで Codex にログインしてください", style="cyan")
            self.deps.run_cli(self.cli("login", windows_suffix=".cmd"))
            if not has_token(self._read_auth()):
                raise ExternalProcessFailureError(
                    "Authentication failed: ~/.codex/auth.json has no token. Please try again.",
                    provider_id=self.id,
                )
            self.capture_native(profile_name)
        elif option_id == "api-key":
            api_key = self.prompt_api_key("OPENAI_API_KEY")
            base_url = self.deps.prompt("OPENAI_BASE_URL (optional)", default="").strip()
            self._print_warnings(self.login_with_api_key(profile_name, api_key, base_url=base_url or None))
        elif option_id == "azure-api-key":
            api_key = self.prompt_api_key("AZURE_OPENAI_API_KEY")
            resource = self.deps.prompt("Azure OpenAI resource name").strip()
            self._print_warnings(
                self.login_with_api_key(profile_name, api_key, azure=True, azure_resource_name=resource)
            )
        else:
            raise self.unknown_option(option_id)

    def _print_warnings(self, warnings: list[str]) -> None:
        for warning in warnings:
            self.deps.console.print(f"⚠️  {warning}", style="yellow")

    def _read_auth(self) -> Any:
        try:
            return read_json(self.auth_path)
        except (OSError, ValueError):
            return None

    def login_with_api_key(
        self,
        profile_name: str,
        api_key: str,
        *,
        base_url: str | None = None,
        azure: bool = False,
        azure_resource_name: str | None = None,
    ) -> list[str]:
        warnings: list[str] = []
        if azure:
            if not azure_resource_name and not base_url:
                raise InvalidInputError("Azure OpenAI requires --azure-resource-name (or a deployment base URL)")
            extra: dict[str, Any] = {"provider": "azure"}
            if azure_resource_name:
                extra["azureResourceName"] = azure_resource_name
                base_url = base_url or compute_azure_base_url(azure_resource_name)
        else:
            w = api_key_format_warning(api_key)
            if w:
                warnings.append(w)
            extra = {"provider": "openai"}
        self.save_api_key(profile_name, api_key, base_url=base_url, extra=extra)
        return warnings

    # --- apply ---

    def apply_credentials(self, profile_name: str, payload: CredentialPayload | None) -> ApplyResult:
        warnings = []
        conflicting = conflicting_codex_env(self.deps.env.environ)
        if conflicting:
            warnings.append(
                "OpenAI-related environment variables are set and override ~/.codex/auth.json: "
                + ", ".join(conflicting)
            )

        if payload is None:
            return ApplyResult(messages=["Codex is using native credentials from ~/.codex/"], warnings=warnings)

        managed_path = self.deps.credential_store.managed_path(self.id, profile_name)

        if isinstance(payload, EnvVarPayload):
            mode = "azure" if payload.env_var_name == "AZURE_OPENAI_API_KEY" else "openai"
            payload = ApiKeyPayload(api_key=payload.env_var_value, extra={"provider": mode})

        if isinstance(payload, OAuthPayload):
            tokens = payload.data.get("tokens")
            if not isinstance(tokens, dict):
                raise MalformedCredentialFileError(self.id, managed_path, "no tokens object")
            backup_file(self.auth_path, timestamp_ms=self.deps.clock())
            write_text_atomic(self.auth_path, managed_path.read_text(encoding="utf-8"))
            return ApplyResult(
                needs_restart=True,
                messages=["Codex OAuth credentials copied to ~/.codex/auth.json"],
                warnings=warnings,
            )

        assert isinstance(payload, ApiKeyPayload)
        try:
            config = to_codex_env_config(payload)
        except ValueError as e:
            raise MalformedCredentialFileError(self.id, managed_path, str(e)) from e

        record: dict[str, Any] = {
            "type": "api-key",
            "provider": config.mode,
            "updatedAt": self.deps.clock(),
            "apiKey": payload.api_key,
            "OPENAI_API_KEY": payload.api_key,
            "OPENAI_BASE_URL": config.base_url,
        }
        if config.mode == "azure":
            record["azureResourceName"] = config.azure_resource_name

        backup_file(self.auth_path, timestamp_ms=self.deps.clock())
        write_json_atomic(self.auth_path, record)
        messages = ["Codex API key written to ~/.codex/auth.json"]
        if config.base_url:
            messages.append(f"OPENAI_BASE_URL={config.base_url}")
        return ApplyResult(needs_restart=True, messages=messages, warnings=warnings)

    def logout(self, profile_name: str) -> list[str]:
        messages = super().logout(profile_name)
        cleared = clear_codex_environment(self.deps.env)
        if cleared:
            messages.append("Cleared persisted environment variables: " + ", ".join(cleared))
        messages.append("To sign the Codex CLI itself out, run: codex logout (affects every profile)")
        return messages
