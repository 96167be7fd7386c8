"""Claude: `~/.claude/.credentials.json`（OAuth）と `~/.claude/settings.json`（API key）。

API key と OAuth は排他:
- API key を適用すると settings.json の env に ANTHROPIC_AUTH_TOKEN を書き、.credentials.json は退避して消す
- OAuth を適用すると .credentials.json を書き、settings.json から API key 関連の env を消す
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from multicoder.atomic_io import backup_file, read_json, write_json_atomic
from multicoder.errors import CredentialNotFoundError, ExternalProcessFailureError, MalformedCredentialFileError
from multicoder.provider_base import ApplyResult, AuthOption, ProviderAuthenticator
from multicoder.records import ApiKeyPayload, CredentialPayload, EnvVarPayload, OAuthPayload

log = logging.getLogger(__name__)

SETTINGS_ENV_KEYS = ("ANTHROPIC_AUTH_TOKEN", "ANTHROPIC_BASE_URL")


def api_key_format_warning(api_key: str) -> str | None:
    if api_key.startswith("sk-ant-") or api_key.startswith("sk-"):
        return None
    return 'Claude API keys typically start with "sk-ant-" or "sk-"; the key format may be incorrect'


class ClaudeAuthenticator(ProviderAuthenticator):
    id = "claude"
    name = "Anthropic Claude"

    @property
    def claude_dir(self) -> Path:
        return self.deps.home / ".claude"

    @property
    def credentials_path(self) -> Path:
        return self.claude_dir / ".credentials.json"

    @property
    def settings_path(self) -> Path:
        return self.claude_dir / "settings.json"

    def get_auth_options(self, profile_name: str) -> list[AuthOption]:
        options: list[AuthOption] = []
        if self._native_oauth() is not None:
            options.append(AuthOption("use-existing", "Use existing credentials", "Already authenticated with Claude"))
        options.append(AuthOption("api-key", "API Key login", "Enter API key manually"))
        options.append(AuthOption("oauth", "Browser login (OAuth)", "Open browser to authenticate with Claude"))
        return options

    def _native_oauth(self) -> dict[str, Any] | None:
        try:
            data = read_json(self.credentials_path)
        except (OSError, ValueError):
            return None
        oauth = data.get("claudeAiOauth") if isinstance(data, dict) else None
        if isinstance(oauth, dict) and (oauth.get("accessToken") or oauth.get("refreshToken")):
            return oauth
        return None

    # --- login ---

    def authenticate(self, option_id: str, profile_name: str) -> None:
        if option_id == "use-existing":
            if self._native_oauth() is None:
                raise CredentialNotFoundError(self.id, profile_name)
            self.capture_native(profile_name)
        elif option_id == "api-key":
            api_key = self.prompt_api_key("Claude API key")
            base_url = self.deps.prompt("Base URL (optional)", default="").strip()
            for warning in self.login_with_api_key(profile_name, api_key, base_url=base_url or None):
                self.deps.console.print(f"⚠️  {warning}", style="yellow")
        elif option_id == "oauth":
            self.deps.console.print("Claude の認証トークンを設定します（ブラウザが開きます）", style="cyan")
            self.deps.run_cli(self.cli("setup-token", windows_suffix=".cmd"))
            if self._native_oauth() is None:
                raise ExternalProcessFailureError(
                    "Authentication failed: Claude credentials file not found. Please try again.",
                    provider_id=self.id,
                )
            self.capture_native(profile_name)
        else:
            raise self.unknown_option(option_id)

    def login_with_api_key(self, profile_name: str, api_key: str, *, base_url: str | None = None) -> list[str]:
        warnings = [w for w in [api_key_format_warning(api_key)] if w]
        self.save_api_key(profile_name, api_key, base_url=base_url)
        return warnings

    # --- apply ---

    def apply_credentials(self, profile_name: str, payload: CredentialPayload | None) -> ApplyResult:
        if payload is None:
            return ApplyResult(messages=["Claude is using native credentials from ~/.claude/"])

        if isinstance(payload, EnvVarPayload):
            payload = ApiKeyPayload(api_key=payload.env_var_value)

        if isinstance(payload, ApiKeyPayload):
            self._write_api_key_settings(payload.api_key, payload.base_url)
            backup = backup_file(self.credentials_path, timestamp_ms=self.deps.clock())
            self.credentials_path.unlink(missing_ok=True)
            messages = ["Claude API key written to ~/.claude/settings.json"]
            if backup is not None:
                messages.append(f"Previous OAuth credentials backed up to {backup.name}")
            return ApplyResult(needs_restart=True, messages=messages)

        assert isinstance(payload, OAuthPayload)
        envelope = payload.data.get("claudeAiOauth")
        if not isinstance(envelope, dict):
            envelope = payload.data.get("oauth")
        if not isinstance(envelope, dict):
            raise MalformedCredentialFileError(
                self.id,
                self.deps.credential_store.managed_path(self.id, profile_name),
                "no claudeAiOauth token envelope",
            )

        backup_file(self.credentials_path, timestamp_ms=self.deps.clock())
        write_json_atomic(self.credentials_path, {"claudeAiOauth": envelope})
        self._strip_api_key_settings()
        return ApplyResult(needs_restart=True, messages=["Claude OAuth credentials written to ~/.claude/.credentials.json"])

    def _load_settings(self) -> dict[str, Any]:
        if not self.settings_path.exists():
            return {}
        try:
            data = read_json(self.settings_path)
        except (OSError, ValueError) as e:
            raise MalformedCredentialFileError(self.id, self.settings_path, str(e)) from e
        if not isinstance(data, dict):
            raise MalformedCredentialFileError(self.id, self.settings_path, "not a JSON object")
        return data

    def _write_api_key_settings(self, api_key: str, base_url: str | None) -> None:
        settings = self._load_settings()
        env = settings.get("env")
        if not isinstance(env, dict):
            env = {}
        env["ANTHROPIC_AUTH_TOKEN"] = api_key
        if base_url:
            env["ANTHROPIC_BASE_URL"] = base_url
        else:
            env.pop("ANTHROPIC_BASE_URL", None)
        settings["env"] = env
        write_json_atomic(self.settings_path, settings)

    def _strip_api_key_settings(self) -> None:
        if not self.settings_path.exists():
            return
        settings = self._load_settings()
        env = settings.get("env")
        if not isinstance(env, dict):
            return
        for key in SETTINGS_ENV_KEYS:
            env.pop(key, None)
        if not env:
            del settings["env"]
        write_json_atomic(self.settings_path, settings)

    def logout(self, profile_name: str) -> list[str]:
        messages = super().logout(profile_name)
        messages.append("To sign the Claude CLI itself out, run: claude logout (affects every profile)")
        return messages
