"""認証情報ストア。

managed レコードは `<config_dir>/credentials/<provider>/<profile>.json` に置く
（環境変数レコードは隣の `<profile>.env.json`）。ディレクトリは 0700、ファイルは 0600。

(provider, profile) ごとの解決順:

1. そのペアの managed レコード（メイン、次に環境変数レコード）
2. プロバイダの OAuth キャッシュディレクトリ（ファイル名が辞書順で最後のもの）
3. プロバイダのネイティブ認証ファイル

ネイティブファイルの方が新しくても managed を優先する。
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from multicoder.atomic_io import (
    PRIVATE_DIR_MODE,
    PRIVATE_FILE_MODE,
    ensure_dir,
    now_ms,
    read_json,
    read_json_object,
    write_json_atomic,
)
from multicoder.errors import (
    CredentialExpiredError,
    CredentialNotFoundError,
    InvalidInputError,
    MalformedCredentialFileError,
)
from multicoder.provider_config import ProviderCatalog
from multicoder.records import CredentialPayload, classify_record

if TYPE_CHECKING:
    from multicoder.provider_base import ApplyResult
    from multicoder.provider_registry import ProviderAuthRegistry

log = logging.getLogger(__name__)

_INVALID_NAME = re.compile(r"[\\/\x00]")


def validate_profile_name(name: str) -> str:
    name = name.strip()
    if not name or name in (".", "..") or _INVALID_NAME.search(name):
        raise InvalidInputError(f"Invalid profile name: {name!r}")
    return name


@dataclass
class CredentialInfo:
    source: str  # native | managed | env
    provider_id: str
    profile_name: str
    location_path: Path | None = None
    env_var_name: str | None = None
    expires_at: int | None = None


@dataclass
class AuthenticationOptions:
    has_oauth: bool
    has_api_key: bool
    has_native_credentials: bool
    native_credential_path: Path | None = None


def _parse_timestamp(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    return None


def expires_at_from_data(provider_id: str, data: Any) -> int | None:
    """Pull the expiry (epoch ms) out of a credential document."""
    if not isinstance(data, dict):
        return None

    if provider_id == "claude":
        for key in ("claudeAiOauth", "oauth"):
            envelope = data.get(key)
            if isinstance(envelope, dict) and envelope.get("expiresAt"):
                return _parse_timestamp(envelope["expiresAt"])

    if provider_id == "gemini" and data.get("expiry_date"):
        return _parse_timestamp(data["expiry_date"])

    if data.get("expiresAt"):
        return _parse_timestamp(data["expiresAt"])
    return None


class CredentialStore:
    def __init__(
        self,
        catalog: ProviderCatalog,
        credentials_dir: Path,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.catalog = catalog
        self.credentials_dir = credentials_dir
        self.clock = clock
        self.translators: ProviderAuthRegistry | None = None

    def attach_translators(self, registry: ProviderAuthRegistry) -> None:
        self.translators = registry

    def initialize(self) -> None:
        ensure_dir(self.credentials_dir, PRIVATE_DIR_MODE)

    # --- paths ---

    def managed_path(self, provider_id: str, profile_name: str) -> Path:
        self.catalog.get(provider_id)
        name = validate_profile_name(profile_name)
        return self.credentials_dir / provider_id / f"{name}.json"

    def managed_env_path(self, provider_id: str, profile_name: str) -> Path:
        self.catalog.get(provider_id)
        name = validate_profile_name(profile_name)
        return self.credentials_dir / provider_id / f"{name}.env.json"

    # --- resolution ---

    def extract_expires_at(self, provider_id: str, path: Path) -> int | None:
        try:
            data = read_json(path)
        except (OSError, ValueError):
            return None
        return expires_at_from_data(provider_id, data)

    def resolve(self, provider_id: str, profile_name: str) -> CredentialInfo | None:
        descriptor = self.catalog.get(provider_id)

        for managed in (
            self.managed_path(provider_id, profile_name),
            self.managed_env_path(provider_id, profile_name),
        ):
            if managed.is_file():
                env_var_name = None
                if managed.name.endswith(".env.json"):
                    record = read_json_object(managed) or {}
                    env_var_name = record.get("envVarName") or None
                return CredentialInfo(
                    source="managed",
                    provider_id=provider_id,
                    profile_name=profile_name,
                    location_path=managed,
                    env_var_name=env_var_name,
                    expires_at=self.extract_expires_at(provider_id, managed),
                )

        cache_dir = descriptor.oauth_cache_dir
        if cache_dir is not None and cache_dir.is_dir():
            try:
                entries = sorted(p.name for p in cache_dir.iterdir() if p.is_file())
            except OSError as e:
                log.debug("cannot list oauth cache %s: %s", cache_dir, e)
                entries = []
            if entries:
                cache_path = cache_dir / entries[-1]
                return CredentialInfo(
                    source="native",
                    provider_id=provider_id,
                    profile_name=profile_name,
                    location_path=cache_path,
                    expires_at=self.extract_expires_at(provider_id, cache_path),
                )

        native = descriptor.native_credential_path
        if native is not None and native.is_file():
            return CredentialInfo(
                source="native",
                provider_id=provider_id,
                profile_name=profile_name,
                location_path=native,
                expires_at=self.extract_expires_at(provider_id, native),
            )
        return None

    def is_valid(self, info: CredentialInfo) -> bool:
        if info.expires_at is None:
            return True
        return info.expires_at > self.clock()

    # --- writes ---

    def save(self, provider_id: str, profile_name: str, record: dict[str, Any]) -> Path:
        """Overwrite the main managed record."""
        path = self.managed_path(provider_id, profile_name)
        ensure_dir(path.parent, PRIVATE_DIR_MODE)
        write_json_atomic(path, record, mode=PRIVATE_FILE_MODE)
        log.info("saved managed credential provider=%s profile=%s", provider_id, profile_name)
        return path

    def save_api_key(
        self,
        provider_id: str,
        profile_name: str,
        api_key: str,
        *,
        base_url: str | None = None,
        extra: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Path:
        record: dict[str, Any] = {"providerId": provider_id, "profileName": profile_name}
        record.update(extra or {})
        record["apiKey"] = api_key
        if base_url:
            record["baseUrl"] = base_url
        record["createdAt"] = self.clock()
        if metadata:
            record["metadata"] = metadata
        return self.save(provider_id, profile_name, record)

    def save_oauth_tokens(self, provider_id: str, profile_name: str, token_data: dict[str, Any]) -> Path:
        record: dict[str, Any] = {"providerId": provider_id, "profileName": profile_name}
        record.update(token_data)
        record["createdAt"] = self.clock()
        return self.save(provider_id, profile_name, record)

    def save_env_var(
        self,
        provider_id: str,
        profile_name: str,
        env_var_name: str,
        env_var_value: str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> Path:
        path = self.managed_env_path(provider_id, profile_name)
        ensure_dir(path.parent, PRIVATE_DIR_MODE)
        record: dict[str, Any] = {
            "providerId": provider_id,
            "profileName": profile_name,
            "envVarName": env_var_name,
            "envVarValue": env_var_value,
            "createdAt": self.clock(),
        }
        if metadata:
            record["metadata"] = metadata
        write_json_atomic(path, record, mode=PRIVATE_FILE_MODE)
        log.info("saved env-var credential provider=%s profile=%s var=%s", provider_id, profile_name, env_var_name)
        return path

    def clear(self, provider_id: str, profile_name: str) -> None:
        for path in (
            self.managed_path(provider_id, profile_name),
            self.managed_env_path(provider_id, profile_name),
        ):
            path.unlink(missing_ok=True)

    def copy_native_to_managed(self, provider_id: str, profile_name: str) -> Path:
        descriptor = self.catalog.get(provider_id)
        native = descriptor.native_credential_path
        if native is None:
            raise CredentialNotFoundError(provider_id, profile_name)
        if not native.is_file():
            raise CredentialNotFoundError(provider_id, profile_name)

        target = self.managed_path(provider_id, profile_name)
        ensure_dir(target.parent, PRIVATE_DIR_MODE)
        shutil.copyfile(native, target)
        if os.name != "nt":
            os.chmod(target, PRIVATE_FILE_MODE)
        log.info("copied native credential provider=%s -> profile=%s", provider_id, profile_name)
        return target

    # --- reads ---

    def load_managed(self, provider_id: str, profile_name: str) -> dict[str, Any] | None:
        return read_json_object(self.managed_path(provider_id, profile_name))

    def load_payload(self, info: CredentialInfo) -> CredentialPayload:
        """Read and classify a managed record. Errors surface as MalformedCredentialFileError."""
        assert info.location_path is not None
        path = info.location_path
        try:
            data = read_json(path)
        except FileNotFoundError:
            raise CredentialNotFoundError(info.provider_id, info.profile_name) from None
        except (OSError, ValueError) as e:
            raise MalformedCredentialFileError(info.provider_id, path, str(e)) from e
        return classify_record(data, provider_id=info.provider_id, path=path)

    def list_managed_profiles(self, provider_id: str) -> list[str]:
        provider_dir = self.credentials_dir / provider_id
        if not provider_dir.is_dir():
            return []
        names: set[str] = set()
        for p in provider_dir.iterdir():
            if not p.is_file() or not p.name.endswith(".json"):
                continue
            if p.name.endswith(".env.json"):
                names.add(p.name[: -len(".env.json")])
            else:
                names.add(p.name[: -len(".json")])
        return sorted(names)

    def get_authentication_options(self, provider_id: str) -> AuthenticationOptions:
        if provider_id not in self.catalog:
            return AuthenticationOptions(has_oauth=False, has_api_key=False, has_native_credentials=False)
        d = self.catalog.get(provider_id)
        return AuthenticationOptions(
            has_oauth=d.supports_oauth,
            has_api_key=d.supports_api_key,
            has_native_credentials=d.native_credential_path is not None,
            native_credential_path=d.native_credential_path,
        )

    # --- apply ---

    def apply(self, provider_id: str, profile_name: str) -> ApplyResult:
        if self.translators is None:
            raise RuntimeError("CredentialStore has no translator registry attached")
        translator = self.translators.get(provider_id)

        info = self.resolve(provider_id, profile_name)
        if info is None:
            raise CredentialNotFoundError(provider_id, profile_name)
        if not self.is_valid(info):
            raise CredentialExpiredError(provider_id, profile_name, path=info.location_path)

        if info.source == "managed":
            payload = self.load_payload(info)
            log.info(
                "applying managed credential provider=%s profile=%s kind=%s",
                provider_id,
                profile_name,
                type(payload).__name__,
            )
            return translator.apply_credentials(profile_name, payload)

        log.info("provider=%s profile=%s uses native credential %s", provider_id, profile_name, info.location_path)
        return translator.apply_credentials(profile_name, None)
