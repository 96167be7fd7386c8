"""表示用の整形（CLI / ログ共通）。"""

from __future__ import annotations

from datetime import datetime
from typing import Any


def mask_secret(value: str | None, *, keep: int = 4) -> str:
    """`sk-ant-abc...wxyz` のように先頭と末尾だけ残す。短い値は全部伏せる。"""
    if not value:
        return ""
    if len(value) <= keep * 2:
        return "*" * len(value)
    return f"{value[:keep]}...{value[-keep:]}"


def format_timestamp(epoch_ms: int | None) -> str:
    if epoch_ms is None:
        return "-"
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def format_auth_method(provider_id: str, details: dict[str, Any]) -> str:
    """get_profile_credential_info の1エントリを人が読むラベルにする。"""
    source = details.get("source")
    if source is None:
        return "Not authenticated"
    if source == "env":
        return f"API Key (ENV: {details.get('envVarName') or '?'})"
    if source == "native":
        return "Native CLI login"

    if details.get("envVarName"):
        return f"API Key (ENV: {details['envVarName']})"
    if details.get("hasApiKey"):
        if provider_id == "gemini":
            key_type = details.get("apiKeyType")
            if key_type == "vertex" or details.get("useVertexAi"):
                return "Vertex AI API Key"
            if key_type == "gemini":
                return "Gemini API Key"
            return "Google API Key"
        if provider_id == "codex" and details.get("apiProvider") == "azure":
            return "Azure OpenAI API Key"
        return "API Key"
    if details.get("hasOAuth"):
        return "OAuth (Browser Login)"
    return "Managed"
