"""プロファイルの永続化（`~/.multicoder/profiles.json`）。

```json
{
  "version": "2.0",
  "currentProfile": "work",
  "profiles": [
    {"name": "work", "providers": {"claude": {"credentialSource": "managed"}}, ...}
  ]
}
```

読み込み時の正規化:
- `profiles` は配列でも name -> profile のマップでも受け付ける
- `currentProfile` の代わりに旧キー `current` も受け付ける
- 存在しないプロファイルを指す current は、名前順で最初のプロファイル（無ければ null）に直す
- 未知のプロバイダの binding は警告して捨てる

保存は常に正規形（配列・名前順）で行う。
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from multicoder.atomic_io import now_ms, read_json, write_json_atomic
from multicoder.config import PERMISSION_MODES
from multicoder.credentials import validate_profile_name
from multicoder.errors import InvalidInputError, ProfileExistsError, ProfileNotFoundError
from multicoder.provider_config import ProviderCatalog

log = logging.getLogger(__name__)

STORE_VERSION = "2.0"
CREDENTIAL_SOURCES = ("managed", "native", "env")


@dataclass
class ProviderBinding:
    credential_source: str = "native"  # managed | native | env
    credential_path: str | None = None
    last_auth: int | None = None
    expires_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"credentialSource": self.credential_source}
        if self.credential_path:
            out["credentialPath"] = self.credential_path
        if self.last_auth is not None:
            out["lastAuth"] = self.last_auth
        if self.expires_at is not None:
            out["expiresAt"] = self.expires_at
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ProviderBinding:
        source = raw.get("credentialSource")
        path = raw.get("credentialPath")
        return cls(
            credential_source=source if source in CREDENTIAL_SOURCES else "native",
            credential_path=path if isinstance(path, str) and path else None,
            last_auth=_as_int(raw.get("lastAuth")),
            expires_at=_as_int(raw.get("expiresAt")),
        )


@dataclass
class ProfileRecord:
    name: str
    providers: dict[str, ProviderBinding] = field(default_factory=dict)
    last_provider: str | None = None
    permission_mode: str = "ask"
    model: str | None = None
    created_at: int = 0
    updated_at: int = 0
    last_used_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "providers": {pid: b.to_dict() for pid, b in sorted(self.providers.items())},
        }
        if self.last_provider:
            out["lastProvider"] = self.last_provider
        if self.last_used_at is not None:
            out["lastUsedAt"] = self.last_used_at
        out["permissionMode"] = self.permission_mode
        if self.model:
            out["model"] = self.model
        out["createdAt"] = self.created_at
        out["updatedAt"] = self.updated_at
        return out


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


@dataclass
class ProfileRegistryFile:
    version: str = STORE_VERSION
    current_profile: str | None = None
    profiles: dict[str, ProfileRecord] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "currentProfile": self.current_profile,
            "profiles": [self.profiles[name].to_dict() for name in sorted(self.profiles)],
        }


def _normalize_profile(
    raw: dict[str, Any],
    fallback_name: str | None,
    *,
    known_providers: ProviderCatalog | None,
    default_permission_mode: str,
    now: int,
) -> ProfileRecord | None:
    name = raw.get("name")
    if not isinstance(name, str) or not name:
        name = fallback_name
    if not name:
        return None

    providers: dict[str, ProviderBinding] = {}
    providers_raw = raw.get("providers")
    if isinstance(providers_raw, dict):
        for provider_id, binding_raw in providers_raw.items():
            if not isinstance(binding_raw, dict):
                continue
            if known_providers is not None and provider_id not in known_providers:
                log.warning("profile %s: dropping binding for unknown provider %s", name, provider_id)
                continue
            providers[provider_id] = ProviderBinding.from_dict(binding_raw)

    permission_mode = raw.get("permissionMode")
    if permission_mode not in PERMISSION_MODES:
        permission_mode = default_permission_mode
    last_provider = raw.get("lastProvider")
    model = raw.get("model")
    created_at = _as_int(raw.get("createdAt"))
    created_at = created_at if created_at is not None else now
    updated_at = _as_int(raw.get("updatedAt"))

    return ProfileRecord(
        name=name,
        providers=providers,
        last_provider=last_provider if isinstance(last_provider, str) and last_provider else None,
        permission_mode=permission_mode,
        model=model if isinstance(model, str) and model else None,
        created_at=created_at,
        updated_at=updated_at if updated_at is not None else created_at,
        last_used_at=_as_int(raw.get("lastUsedAt")),
    )


def normalize_registry(
    raw: Any,
    *,
    known_providers: ProviderCatalog | None = None,
    default_permission_mode: str = "ask",
    now: int | None = None,
) -> ProfileRegistryFile:
    if not isinstance(raw, dict):
        return ProfileRegistryFile()
    now = now if now is not None else now_ms()

    version = raw.get("version")
    data = ProfileRegistryFile(version=version if isinstance(version, str) else STORE_VERSION)

    entries: list[tuple[str | None, Any]] = []
    profiles_raw = raw.get("profiles")
    if isinstance(profiles_raw, list):
        entries = [(None, p) for p in profiles_raw]
    elif isinstance(profiles_raw, dict):
        entries = list(profiles_raw.items())

    for fallback_name, profile_raw in entries:
        if not isinstance(profile_raw, dict):
            continue
        record = _normalize_profile(
            profile_raw,
            fallback_name,
            known_providers=known_providers,
            default_permission_mode=default_permission_mode,
            now=now,
        )
        if record is not None:
            data.profiles[record.name] = record

    current = raw.get("currentProfile")
    if not isinstance(current, str):
        current = raw.get("current") if isinstance(raw.get("current"), str) else None
    if current is not None and current not in data.profiles:
        current = None
    if current is None and data.profiles:
        current = sorted(data.profiles)[0]
    data.current_profile = current
    return data


class ProfileStore:
    def __init__(
        self,
        path: Path,
        *,
        catalog: ProviderCatalog | None = None,
        default_permission_mode: str = "ask",
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.path = path
        self.catalog = catalog
        self.default_permission_mode = default_permission_mode
        self.clock = clock
        self.data = self._load()

    def _load(self) -> ProfileRegistryFile:
        if not self.path.exists():
            return ProfileRegistryFile()
        try:
            raw = read_json(self.path)
        except (OSError, ValueError) as e:
            log.warning("profiles file %s is invalid; using empty registry (%s)", self.path, e)
            return ProfileRegistryFile()
        return normalize_registry(
            raw,
            known_providers=self.catalog,
            default_permission_mode=self.default_permission_mode,
            now=self.clock(),
        )

    def save(self) -> None:
        write_json_atomic(self.path, self.data.to_dict())

    # --- queries ---

    def exists(self, name: str) -> bool:
        return name in self.data.profiles

    def get(self, name: str) -> ProfileRecord | None:
        return self.data.profiles.get(name)

    def require(self, name: str) -> ProfileRecord:
        profile = self.get(name)
        if profile is None:
            raise ProfileNotFoundError(name)
        return profile

    def list(self) -> list[ProfileRecord]:
        return [self.data.profiles[n] for n in sorted(self.data.profiles)]

    def get_current_name(self) -> str | None:
        return self.data.current_profile

    def get_current(self) -> ProfileRecord | None:
        name = self.data.current_profile
        return self.data.profiles.get(name) if name else None

    def get_provider_auth(self, profile_name: str, provider_id: str) -> ProviderBinding | None:
        profile = self.get(profile_name)
        if profile is None:
            return None
        return profile.providers.get(provider_id)

    def get_last_provider(self, profile_name: str) -> str | None:
        profile = self.get(profile_name)
        return profile.last_provider if profile else None

    # --- mutations ---

    def set_current(self, name: str | None) -> None:
        if name is not None:
            self.require(name)
        self.data.current_profile = name
        self.save()

    def create(
        self,
        name: str,
        *,
        permission_mode: str | None = None,
        model: str | None = None,
    ) -> ProfileRecord:
        name = validate_profile_name(name)
        if self.exists(name):
            raise ProfileExistsError(name)
        mode = permission_mode or self.default_permission_mode
        if mode not in PERMISSION_MODES:
            raise InvalidInputError(f"Invalid permission mode: {mode!r} (expected ask, allow or deny)")

        now = self.clock()
        profile = ProfileRecord(name=name, permission_mode=mode, model=model, created_at=now, updated_at=now)
        self.data.profiles[name] = profile
        if len(self.data.profiles) == 1:
            self.data.current_profile = name
        self.save()
        log.info("created profile %s", name)
        return profile

    def update(self, name: str, updater: Callable[[ProfileRecord], ProfileRecord]) -> ProfileRecord:
        existing = self.require(name)
        updated = updater(replace(existing, providers=dict(existing.providers)))
        updated.updated_at = self.clock()
        self.data.profiles[name] = updated
        self.save()
        return updated

    def delete(self, name: str) -> ProfileRecord:
        """プロファイルを消す。current だった場合は名前順で最初の残りを current にする。"""
        removed = self.require(name)
        del self.data.profiles[name]
        if self.data.current_profile == name:
            remaining = sorted(self.data.profiles)
            self.data.current_profile = remaining[0] if remaining else None
        self.save()
        log.info("deleted profile %s", name)
        return removed

    def set_provider_auth(self, profile_name: str, provider_id: str, binding: ProviderBinding) -> ProfileRecord:
        if self.catalog is not None:
            self.catalog.get(provider_id)

        def _apply(p: ProfileRecord) -> ProfileRecord:
            p.providers[provider_id] = binding
            return p

        return self.update(profile_name, _apply)

    def remove_provider_auth(self, profile_name: str, provider_id: str) -> ProfileRecord:
        def _apply(p: ProfileRecord) -> ProfileRecord:
            p.providers.pop(provider_id, None)
            if p.last_provider == provider_id:
                remaining = sorted(p.providers)
                p.last_provider = remaining[0] if remaining else None
            return p

        return self.update(profile_name, _apply)

    def set_last_provider(self, profile_name: str, provider_id: str) -> ProfileRecord:
        def _apply(p: ProfileRecord) -> ProfileRecord:
            p.last_provider = provider_id
            return p

        return self.update(profile_name, _apply)

    def mark_used(self, profile_name: str) -> ProfileRecord:
        now = self.clock()

        def _apply(p: ProfileRecord) -> ProfileRecord:
            p.last_used_at = now
            return p

        return self.update(profile_name, _apply)
