"""Managed credential record の判別。

保存された JSON は3種類のどれか:

- API key: `{"apiKey": ..., "baseUrl"?: ...}`（Gemini/Codex はモード情報も持つ）
- OAuth: プロバイダ CLI が書くトークン一式（`tokens`, `claudeAiOauth`, `access_token` ...）
- 環境変数: `{"envVarName": ..., "envVarValue": ...}`

判別はここの `classify_record` だけで行う。どれにも当たらなければ
MalformedCredentialFileError。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from multicoder.errors import MalformedCredentialFileError

BOOKKEEPING_KEYS = ("providerId", "profileName", "createdAt", "metadata")


@dataclass
class ApiKeyPayload:
    api_key: str
    base_url: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.extra.get(key, default)


@dataclass
class OAuthPayload:
    data: dict[str, Any]


@dataclass
class EnvVarPayload:
    env_var_name: str
    env_var_value: str


CredentialPayload = Union[ApiKeyPayload, OAuthPayload, EnvVarPayload]


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def classify_record(
    data: Any,
    *,
    provider_id: str,
    path: Path,
) -> CredentialPayload:
    if not isinstance(data, dict):
        raise MalformedCredentialFileError(provider_id, path, "not a JSON object")

    tokens = data.get("tokens")
    if isinstance(tokens, dict) and (tokens.get("access_token") or tokens.get("id_token")):
        return OAuthPayload(data=data)

    if _non_empty_str(data.get("apiKey")):
        extra = {
            k: v for k, v in data.items() if k not in ("apiKey", "baseUrl") and k not in BOOKKEEPING_KEYS
        }
        base_url = data.get("baseUrl")
        return ApiKeyPayload(
            api_key=data["apiKey"],
            base_url=base_url if _non_empty_str(base_url) else None,
            extra=extra,
        )

    if isinstance(data.get("claudeAiOauth"), dict) or isinstance(data.get("oauth"), dict):
        return OAuthPayload(data=data)

    if _non_empty_str(data.get("envVarName")) and _non_empty_str(data.get("envVarValue")):
        return EnvVarPayload(env_var_name=data["envVarName"], env_var_value=data["envVarValue"])

    for key in ("access_token", "refresh_token", "accessToken"):
        if _non_empty_str(data.get(key)):
            return OAuthPayload(data=data)

    raise MalformedCredentialFileError(provider_id, path, "unrecognised credential shape")


def strip_bookkeeping(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in BOOKKEEPING_KEYS}
