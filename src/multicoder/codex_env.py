"""Codex（OpenAI / Azure OpenAI）の API key 設定。"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from multicoder.records import ApiKeyPayload
from multicoder.system_env import EnvironmentPersistence

log = logging.getLogger(__name__)

CODEX_ENV_VARS = ("OPENAI_API_KEY", "AZURE_OPENAI_API_KEY", "OPENAI_BASE_URL")
AZURE_DEPLOYMENT_NAME = "gpt-5-codex"


def compute_azure_base_url(resource_name: str) -> str:
    return f"https://{resource_name}.openai.azure.com/openai/deployments/{AZURE_DEPLOYMENT_NAME}"


@dataclass
class CodexEnvConfig:
    mode: str  # openai | azure
    base_url: str | None = None
    azure_resource_name: str | None = None


def to_codex_env_config(payload: ApiKeyPayload) -> CodexEnvConfig:
    """保存済み API key レコードから Codex の接続設定を組み立てる。

    Azure で base URL もリソース名も無い場合は ValueError。
    """
    provider = payload.get("provider")
    mode = "azure" if isinstance(provider, str) and provider.lower() == "azure" else "openai"

    base_url = payload.base_url
    resource = payload.get("azureResourceName")
    resource = resource if isinstance(resource, str) and resource else None

    if mode == "azure":
        if not base_url and resource:
            base_url = compute_azure_base_url(resource)
        if not base_url:
            raise ValueError("Azure OpenAI configuration is missing the deployment URL")
        return CodexEnvConfig(mode="azure", base_url=base_url, azure_resource_name=resource)

    return CodexEnvConfig(mode="openai", base_url=base_url)


def conflicting_codex_env(environ) -> list[str]:
    return [name for name in CODEX_ENV_VARS if environ.get(name)]


def clear_codex_environment(env: EnvironmentPersistence) -> list[str]:
    """永続化された Codex 関連の環境変数を消す。消せたものを返す。"""
    cleared: list[str] = []
    for name in CODEX_ENV_VARS:
        try:
            env.remove(name)
        except (OSError, RuntimeError) as e:
            log.warning("failed to clear %s: %s", name, e)
            continue
        cleared.append(name)
    return cleared
