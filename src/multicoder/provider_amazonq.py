"""Amazon Q: 検出のみ（`q login` で作られた認証情報をそのまま使う）。"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from multicoder.atomic_io import read_json
from multicoder.credentials import CredentialInfo, expires_at_from_data
from multicoder.errors import CredentialNotFoundError, ExternalProcessFailureError, InvalidInputError
from multicoder.provider_base import ApplyResult, AuthOption, AuthStatus, ProviderAuthenticator
from multicoder.records import CredentialPayload

log = logging.getLogger(__name__)


class AmazonQAuthenticator(ProviderAuthenticator):
    id = "q"
    name = "Amazon Q"

    def candidate_paths(self) -> list[Path]:
        home = self.deps.home
        return [
            home / ".q" / "credentials.json",
            home / ".q" / "credentials",
            home / ".amazon-q" / "credentials.json",
            home / ".amazon-q" / "credentials",
        ]

    @property
    def sso_cache_dir(self) -> Path:
        return self.deps.home / ".aws" / "sso" / "cache"

    def _read(self, path: Path) -> dict[str, Any] | None:
        try:
            data = read_json(path)
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def detect(self, profile_name: str) -> AuthStatus:
        now = self.deps.clock()
        for path in self.candidate_paths():
            data = self._read(path)
            if data is None or not (data.get("accessToken") or data.get("access_token") or data.get("token")):
                continue
            expires_at = expires_at_from_data(self.id, data)
            info = CredentialInfo(
                source="native", provider_id=self.id, profile_name=profile_name, location_path=path, expires_at=expires_at
            )
            return AuthStatus(info=info, valid=expires_at is None or expires_at > now)

        if self.sso_cache_dir.is_dir():
            for path in sorted(self.sso_cache_dir.glob("*.json")):
                data = self._read(path)
                if data is None or not (data.get("accessToken") or data.get("access_token")):
                    continue
                expires_at = expires_at_from_data(self.id, data)
                if expires_at is not None and expires_at > now:
                    info = CredentialInfo(
                        source="native",
                        provider_id=self.id,
                        profile_name=profile_name,
                        location_path=path,
                        expires_at=expires_at,
                    )
                    return AuthStatus(info=info, valid=True)
        return AuthStatus(info=None, valid=False)

    def check_auth(self, profile_name: str) -> AuthStatus:
        status = self.detect(profile_name)
        if status.info is not None:
            return status
        return super().check_auth(profile_name)

    def get_auth_options(self, profile_name: str) -> list[AuthOption]:
        options: list[AuthOption] = []
        if self.detect(profile_name).valid:
            options.append(AuthOption("use-existing", "Use existing credentials", "Already authenticated with Amazon Q"))
        options.append(AuthOption("oauth", "Browser login (OAuth)", "Open browser to authenticate with Amazon Q"))
        return options

    def authenticate(self, option_id: str, profile_name: str) -> None:
        if option_id == "use-existing":
            status = self.detect(profile_name)
            if not status.valid:
                raise CredentialNotFoundError(self.id, profile_name)
        elif option_id == "oauth":
            self.deps.console.print("ブラウザで Amazon Q にログインしてください", style="cyan")
            self.deps.run_cli(self.cli("login", "--license", "free", windows_suffix=".cmd"))
            status = self.detect(profile_name)
            if not status.valid:
                raise ExternalProcessFailureError(
                    "Authentication failed: no Amazon Q session found after q login. Please try again.",
                    provider_id=self.id,
                )
        else:
            raise self.unknown_option(option_id)

        path = status.info.location_path if status.info else None
        self.bind(profile_name, source="native", path=path, expires_at=status.info.expires_at if status.info else None)

    def login_with_api_key(self, profile_name: str, api_key: str, **_: Any) -> list[str]:
        raise InvalidInputError("Amazon Q does not support API key login; use `multicoder login q`")

    def apply_credentials(self, profile_name: str, payload: CredentialPayload | None) -> ApplyResult:
        if payload is not None:
            log.info("q: ignoring managed record for profile %s; Amazon Q reads its own session", profile_name)
        return ApplyResult(messages=["Amazon Q uses its own signed-in session (run `q login` to change accounts)"])

    def logout(self, profile_name: str) -> list[str]:
        messages = super().logout(profile_name)
        messages.append("To sign the Amazon Q CLI itself out, run: q logout (affects every profile)")
        return messages
