"""Gemini: `~/.gemini/`（`GEMINI_HOME_DIR` で差し替え可）。

- OAuth: `oauth_creds.json` + `google_accounts.json`（active / old）
- API key: `.env` の `GEMINI_API_KEY` / `GOOGLE_API_KEY`（Vertex AI は PROJECT / LOCATION も）
- どちらを使うかは `settings.json` の `security.auth.selectedType`

モードを切り替えるときは前のモードの痕跡（.env のキー / OAuth キャッシュ）を必ず消す。
"""

from __future__ import annotations

import base64
import json
import logging
import re
from pathlib import Path
from typing import Any

from dotenv import dotenv_values

from multicoder.atomic_io import backup_file, read_json, write_json_atomic, write_text_atomic
from multicoder.errors import (
    CredentialNotFoundError,
    InvalidInputError,
    MalformedCredentialFileError,
    OAuthTimeoutError,
)
from multicoder.provider_base import ApplyResult, AuthOption, ProviderAuthenticator
from multicoder.records import ApiKeyPayload, CredentialPayload, EnvVarPayload, OAuthPayload, strip_bookkeeping

log = logging.getLogger(__name__)

MANAGED_ENV_KEYS = ("GOOGLE_API_KEY", "GEMINI_API_KEY", "GOOGLE_CLOUD_PROJECT", "GOOGLE_CLOUD_LOCATION")
_PLAIN_VALUE = re.compile(r"^[A-Za-z0-9_\-./:@+,]*$")


def api_key_format_warning(api_key: str) -> str | None:
    if api_key.startswith("AIza"):
        return None
    return 'Google API keys typically start with "AIza"; the key format may be incorrect'


def email_from_id_token(id_token: str) -> str | None:
    """JWT の payload（2番目のセグメント）から email を取り出す。"""
    parts = id_token.split(".")
    if len(parts) < 2:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (ValueError, UnicodeError):
        return None
    email = payload.get("email") if isinstance(payload, dict) else None
    return email if isinstance(email, str) and email else None


def _format_dotenv_line(key: str, value: str) -> str:
    if _PLAIN_VALUE.match(value):
        return f"{key}={value}"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'{key}="{escaped}"'


def api_key_mode(payload: ApiKeyPayload) -> str:
    """gemini | vertex | google"""
    key_type = payload.get("apiKeyType")
    if key_type == "gemini":
        return "gemini"
    if key_type == "vertex" or payload.get("useVertexAi"):
        return "vertex"
    return "google"


class GeminiAuthenticator(ProviderAuthenticator):
    id = "gemini"
    name = "Google Gemini"

    @property
    def gemini_dir(self) -> Path:
        root = self.deps.settings.gemini_home or self.deps.home
        return root / ".gemini"

    @property
    def oauth_path(self) -> Path:
        return self.gemini_dir / "oauth_creds.json"

    @property
    def env_path(self) -> Path:
        return self.gemini_dir / ".env"

    @property
    def settings_path(self) -> Path:
        return self.gemini_dir / "settings.json"

    @property
    def accounts_path(self) -> Path:
        return self.gemini_dir / "google_accounts.json"

    def get_auth_options(self, profile_name: str) -> list[AuthOption]:
        options: list[AuthOption] = []
        status = self.check_auth(profile_name)
        if status.valid and status.source != "env":
            options.append(AuthOption("use-existing", "Use existing credentials", "Already authenticated with Gemini"))
        options += [
            AuthOption("oauth", "Browser login (OAuth)", "Gemini CLI will open the browser"),
            AuthOption("gemini-api-key", "GEMINI_API_KEY login", "Enter GEMINI_API_KEY manually"),
            AuthOption("google-api-key", "GOOGLE_API_KEY login", "Enter GOOGLE_API_KEY manually"),
            AuthOption("vertex-ai", "Vertex AI login", "Enter GOOGLE_API_KEY with Vertex AI project / location"),
        ]
        return options

    # --- login ---

    def authenticate(self, option_id: str, profile_name: str) -> None:
        if option_id == "use-existing":
            if not self.oauth_path.is_file():
                raise CredentialNotFoundError(self.id, profile_name)
            self.capture_native(profile_name)
        elif option_id == "oauth":
            self.oauth_login(profile_name)
        elif option_id in ("gemini-api-key", "google-api-key"):
            label = "GEMINI_API_KEY" if option_id == "gemini-api-key" else "GOOGLE_API_KEY"
            api_key = self.prompt_api_key(label)
            key_type = "gemini" if option_id == "gemini-api-key" else "google"
            self._print_warnings(self.login_with_api_key(profile_name, api_key, api_key_type=key_type))
        elif option_id == "vertex-ai":
            api_key = self.prompt_api_key("GOOGLE_API_KEY (Vertex AI)")
            project_id = self.deps.prompt("Google Cloud Project ID").strip()
            location = self.deps.prompt("Google Cloud Location (e.g. us-central1)").strip()
            self._print_warnings(
                self.login_with_api_key(
                    profile_name,
                    api_key,
                    api_key_type="vertex",
                    project_id=project_id,
                    location=location,
                )
            )
        else:
            raise self.unknown_option(option_id)

    def _print_warnings(self, warnings: list[str]) -> None:
        for warning in warnings:
            self.deps.console.print(f"⚠️  {warning}", style="yellow")

    def login_with_api_key(
        self,
        profile_name: str,
        api_key: str,
        *,
        api_key_type: str = "google",
        project_id: str | None = None,
        location: str | None = None,
    ) -> list[str]:
        warnings = [w for w in [api_key_format_warning(api_key)] if w]
        if api_key_type == "vertex":
            if not project_id:
                raise InvalidInputError("Google Cloud Project ID is required for Vertex AI")
            if not location:
                raise InvalidInputError("Google Cloud Location is required for Vertex AI")
            extra = {"projectId": project_id, "location": location, "useVertexAi": True, "apiKeyType": "vertex"}
        elif api_key_type == "gemini":
            extra = {"apiKeyType": "gemini"}
        else:
            extra = {"apiKeyType": "google"}
        self.save_api_key(profile_name, api_key, extra=extra)
        return warnings

    def oauth_login(self, profile_name: str) -> Path:
        self.deps.console.print("Gemini CLI がブラウザで認証を行います", style="cyan")
        self.oauth_path.unlink(missing_ok=True)
        self._strip_env_keys()
        self._set_selected_type("oauth-personal")

        self.deps.run_cli(self.cli("hello", windows_suffix=".cmd"))
        self.wait_for_oauth_file()
        return self.capture_native(profile_name)

    def wait_for_oauth_file(self) -> None:
        timeout = self.deps.settings.oauth.timeout_seconds
        interval = self.deps.settings.oauth.poll_interval_seconds
        deadline = self.deps.monotonic() + timeout
        while True:
            if self.oauth_path.is_file():
                return
            if self.deps.monotonic() >= deadline:
                raise OAuthTimeoutError(self.id, self.oauth_path, timeout)
            self.deps.sleep(interval)

    # --- apply ---

    def apply_credentials(self, profile_name: str, payload: CredentialPayload | None) -> ApplyResult:
        if payload is None:
            return ApplyResult(messages=[f"Gemini is using native credentials from {self.gemini_dir}"])

        if isinstance(payload, EnvVarPayload):
            key_type = "gemini" if payload.env_var_name == "GEMINI_API_KEY" else "google"
            payload = ApiKeyPayload(api_key=payload.env_var_value, extra={"apiKeyType": key_type})

        if isinstance(payload, ApiKeyPayload):
            return self._apply_api_key(payload)

        assert isinstance(payload, OAuthPayload)
        return self._apply_oauth(payload)

    def _apply_api_key(self, payload: ApiKeyPayload) -> ApplyResult:
        mode = api_key_mode(payload)
        env_vars = self._read_env()
        for key in list(env_vars):
            if key in MANAGED_ENV_KEYS or key.endswith("GEMINI_API_KEY"):
                del env_vars[key]

        if mode == "gemini":
            env_vars["GEMINI_API_KEY"] = payload.api_key
        else:
            env_vars["GOOGLE_API_KEY"] = payload.api_key
            if mode == "vertex":
                if payload.get("projectId"):
                    env_vars["GOOGLE_CLOUD_PROJECT"] = str(payload.get("projectId"))
                if payload.get("location"):
                    env_vars["GOOGLE_CLOUD_LOCATION"] = str(payload.get("location"))
        self._write_env(env_vars)

        self._set_selected_type("vertex-ai" if mode == "vertex" else "gemini-api-key")

        messages = [f"Gemini API key written to {self.env_path}"]
        backup = backup_file(self.oauth_path, timestamp_ms=self.deps.clock())
        if backup is not None:
            self.oauth_path.unlink(missing_ok=True)
            messages.append(f"Cached OAuth credentials moved to {backup.name}")
        return ApplyResult(needs_restart=True, messages=messages)

    def _apply_oauth(self, payload: OAuthPayload) -> ApplyResult:
        data = strip_bookkeeping(payload.data)
        backup_file(self.oauth_path, timestamp_ms=self.deps.clock())
        write_json_atomic(self.oauth_path, data)

        result = ApplyResult(needs_restart=True, messages=[f"Gemini OAuth credentials written to {self.oauth_path}"])
        id_token = data.get("id_token")
        email = email_from_id_token(id_token) if isinstance(id_token, str) else None
        if email:
            self._update_accounts(email)
            result.messages.append(f"Active Google account: {email}")
        else:
            result.warnings.append("Could not read the account email from id_token; google_accounts.json not updated")

        self._strip_env_keys()
        self._set_selected_type("oauth-personal")
        return result

    # --- files ---

    def _read_env(self) -> dict[str, str]:
        if not self.env_path.is_file():
            return {}
        return {k: v for k, v in dotenv_values(self.env_path, interpolate=False).items() if v is not None}

    def _write_env(self, env_vars: dict[str, str]) -> None:
        if not env_vars:
            self.env_path.unlink(missing_ok=True)
            return
        content = "\n".join(_format_dotenv_line(k, v) for k, v in env_vars.items()) + "\n"
        write_text_atomic(self.env_path, content)

    def _strip_env_keys(self) -> None:
        if not self.env_path.is_file():
            return
        env_vars = self._read_env()
        if not any(k in env_vars for k in MANAGED_ENV_KEYS):
            return
        for key in MANAGED_ENV_KEYS:
            env_vars.pop(key, None)
        self._write_env(env_vars)

    def _load_json(self, path: Path, default: dict[str, Any]) -> dict[str, Any]:
        if not path.exists():
            return default
        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            raise MalformedCredentialFileError(self.id, path, str(e)) from e
        if not isinstance(data, dict):
            raise MalformedCredentialFileError(self.id, path, "not a JSON object")
        return data

    def _set_selected_type(self, selected: str) -> None:
        settings = self._load_json(self.settings_path, {})
        security = settings.get("security")
        if not isinstance(security, dict):
            security = settings["security"] = {}
        auth = security.get("auth")
        if not isinstance(auth, dict):
            auth = security["auth"] = {}
        auth["selectedType"] = selected
        write_json_atomic(self.settings_path, settings)

    def _update_accounts(self, email: str) -> None:
        accounts = self._load_json(self.accounts_path, {"active": "", "old": []})
        old = accounts.get("old")
        if not isinstance(old, list):
            old = []
        previous = accounts.get("active")
        if previous and previous != email and previous not in old:
            old.append(previous)
        if email in old:
            old.remove(email)
        accounts["active"] = email
        accounts["old"] = old
        write_json_atomic(self.accounts_path, accounts)

    def logout(self, profile_name: str) -> list[str]:
        messages = super().logout(profile_name)
        messages.append(f"To sign the Gemini CLI itself out, delete {self.oauth_path} (affects every profile)")
        return messages
