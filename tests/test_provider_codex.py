"""Codex: auth.json への OAuth コピーと API key（OpenAI / Azure）。"""

import json
from pathlib import Path

import pytest

from multicoder.codex_env import compute_azure_base_url, to_codex_env_config
from multicoder.context import AppContext
from multicoder.env_file import read_env_file
from multicoder.errors import InvalidInputError, MalformedCredentialFileError
from multicoder.records import ApiKeyPayload


def _auth_path(ctx: AppContext) -> Path:
    return ctx.settings.home / ".codex" / "auth.json"


def test_azure_scenario_writes_exact_base_url(ctx: AppContext) -> None:
    translator = ctx.registry.get("codex")
    translator.login_with_api_key("azure", "az-key", azure=True, azure_resource_name="myres")

    result = ctx.credentials.apply("codex", "azure")

    auth = json.loads(_auth_path(ctx).read_text(encoding="utf-8"))
    assert auth["type"] == "api-key"
    assert auth["provider"] == "azure"
    assert auth["apiKey"] == "az-key"
    assert auth["OPENAI_API_KEY"] == "az-key"
    assert auth["OPENAI_BASE_URL"] == "https://myres.openai.azure.com/openai/deployments/gpt-5-codex"
    assert auth["azureResourceName"] == "myres"
    assert isinstance(auth["updatedAt"], int)
    assert result.needs_restart is True


def test_openai_key_with_base_url(ctx: AppContext) -> None:
    ctx.registry.get("codex").login_with_api_key("work", "sk-1", base_url="https://gw.example/v1")
    ctx.credentials.apply("codex", "work")

    auth = json.loads(_auth_path(ctx).read_text(encoding="utf-8"))
    assert auth["provider"] == "openai"
    assert auth["OPENAI_BASE_URL"] == "https://gw.example/v1"
    assert "azureResourceName" not in auth


def test_conflicting_env_is_a_warning(ctx: AppContext, environ: dict[str, str]) -> None:
    environ["OPENAI_API_KEY"] = "sk-shell"
    ctx.credentials.save_api_key("codex", "work", "sk-1", extra={"provider": "openai"})

    result = ctx.credentials.apply("codex", "work")

    assert any("OPENAI_API_KEY" in w for w in result.warnings)
    assert _auth_path(ctx).exists()


def test_oauth_record_is_copied_verbatim_with_backup(ctx: AppContext) -> None:
    auth = _auth_path(ctx)
    auth.parent.mkdir()
    auth.write_text('{"OPENAI_API_KEY": "old"}', encoding="utf-8")
    managed = ctx.credentials.save_oauth_tokens(
        "codex", "work", {"tokens": {"access_token": "at", "id_token": "it"}, "last_refresh": "x"}
    )

    result = ctx.credentials.apply("codex", "work")

    assert auth.read_text(encoding="utf-8") == managed.read_text(encoding="utf-8")
    assert len(list(auth.parent.glob("auth.json.backup.*"))) == 1
    assert result.needs_restart is True


def test_azure_record_without_url_is_malformed(ctx: AppContext) -> None:
    ctx.credentials.save_api_key("codex", "broken", "az", extra={"provider": "azure"})
    with pytest.raises(MalformedCredentialFileError) as ei:
        ctx.credentials.apply("codex", "broken")
    assert "deployment URL" in ei.value.reason


def test_azure_login_requires_resource(ctx: AppContext) -> None:
    with pytest.raises(InvalidInputError):
        ctx.registry.get("codex").login_with_api_key("a", "az", azure=True)


def test_to_codex_env_config() -> None:
    cfg = to_codex_env_config(ApiKeyPayload(api_key="k", extra={"provider": "AZURE", "azureResourceName": "r"}))
    assert cfg.mode == "azure"
    assert cfg.base_url == compute_azure_base_url("r")

    cfg = to_codex_env_config(ApiKeyPayload(api_key="k"))
    assert cfg.mode == "openai"
    assert cfg.base_url is None


def test_check_auth_scans_native_candidates(ctx: AppContext) -> None:
    codex = ctx.settings.home / ".codex"
    codex.mkdir()
    (codex / "credentials.json").write_text('{"access_token": "a"}', encoding="utf-8")

    status = ctx.registry.get("codex").check_auth("work")
    assert status.valid
    assert status.info.location_path == codex / "credentials.json"


def test_logout_clears_managed_and_persisted_env(ctx: AppContext) -> None:
    ctx.env.set("OPENAI_API_KEY", "sk-persisted")
    ctx.env.set("KEEP", "1")
    ctx.registry.get("codex").login_with_api_key("work", "sk-1")

    messages = ctx.registry.get("codex").logout("work")

    assert ctx.credentials.load_managed("codex", "work") is None
    assert read_env_file(ctx.env.user_env_file) == {"KEEP": "1"}
    assert "OPENAI_API_KEY" not in ctx.env.environ
    assert any("codex logout" in m for m in messages)
