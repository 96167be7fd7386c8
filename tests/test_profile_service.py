"""ProfileService: 切替・削除のカスケード・各種作成経路。"""

import json

import pytest

from multicoder.context import AppContext
from multicoder.errors import InvalidInputError, ProfileExistsError, ProfileNotFoundError
from multicoder.profile_store import ProviderBinding


def test_delete_cascades_and_promotes(ctx: AppContext) -> None:
    svc = ctx.service
    svc.create_profile("main")
    svc.create_profile("beta")
    svc.create_profile("alpha")
    svc.authenticate_with_api_key("main", "claude", "sk-ant-1")
    svc.authenticate_with_api_key("main", "codex", "sk-2")
    claude_path = ctx.credentials.managed_path("claude", "main")
    codex_path = ctx.credentials.managed_path("codex", "main")
    assert claude_path.exists() and codex_path.exists()
    assert ctx.profiles.get_current_name() == "main"

    assert svc.delete_profile("main") == "alpha"

    assert not claude_path.exists()
    assert not codex_path.exists()
    assert not ctx.profiles.exists("main")

    svc.delete_profile("alpha")
    assert svc.delete_profile("beta") is None
    assert svc.get_current_profile() is None


def test_switch_accumulates_per_provider_errors(ctx: AppContext) -> None:
    svc = ctx.service
    svc.create_profile("other")
    svc.authenticate_with_api_key("work", "claude", "sk-ant-1")
    ctx.profiles.set_provider_auth("work", "gemini", ProviderBinding(credential_source="managed"))

    result = svc.switch_profile("work")

    assert result.success is False
    assert result.applied == ["claude"]
    assert len(result.errors) == 1
    assert result.errors[0].startswith("gemini: ")
    assert result.needs_restart is True
    assert result.restart_required == ["claude"]

    settings = json.loads((ctx.settings.home / ".claude" / "settings.json").read_text(encoding="utf-8"))
    assert settings["env"]["ANTHROPIC_AUTH_TOKEN"] == "sk-ant-1"
    assert ctx.profiles.get_current_name() == "work"
    assert result.profile.last_used_at is not None


def test_switch_clears_conflicting_process_env(ctx: AppContext, environ: dict[str, str]) -> None:
    environ.update({"ANTHROPIC_API_KEY": "shell", "AWS_SESSION_TOKEN": "t", "PATH": "/bin"})
    ctx.service.authenticate_with_api_key("work", "claude", "sk-ant-1")

    result = ctx.service.switch_profile("work")

    assert result.success
    assert sorted(result.cleared_env_vars) == ["ANTHROPIC_API_KEY", "AWS_SESSION_TOKEN"]
    assert environ == {"PATH": "/bin"}
    assert any("ANTHROPIC_API_KEY" in w for w in result.warnings)
    assert not ctx.env.user_env_file.exists()


def test_switch_can_clear_persisted_env(ctx: AppContext) -> None:
    ctx.settings.clear_persisted_on_switch = True
    ctx.env.set("OPENAI_API_KEY", "sk-persisted")
    ctx.env.set("KEEP", "1")
    ctx.service.authenticate_with_api_key("work", "codex", "sk-1")

    ctx.service.switch_profile("work")

    assert ctx.env.list() == {"KEEP": "1"}


def test_switch_requires_existing_profile_with_providers(ctx: AppContext) -> None:
    with pytest.raises(ProfileNotFoundError):
        ctx.service.switch_profile("missing")
    ctx.service.create_profile("empty")
    with pytest.raises(InvalidInputError):
        ctx.service.switch_profile("empty")


def test_create_profile_with_api_key_rolls_back_on_error(ctx: AppContext) -> None:
    svc = ctx.service
    with pytest.raises(InvalidInputError):
        svc.create_profile_with_api_key("v", "gemini", "AIza", api_key_type="vertex")
    assert not ctx.profiles.exists("v")

    warnings = svc.create_profile_with_api_key("g", "gemini", "AIza-1", api_key_type="gemini", permission_mode="deny")
    assert warnings == []
    profile = ctx.profiles.require("g")
    assert profile.permission_mode == "deny"
    assert profile.last_provider == "gemini"

    with pytest.raises(ProfileExistsError):
        svc.create_profile_with_api_key("g", "claude", "sk-ant-1")


def test_create_profile_from_env(ctx: AppContext, environ: dict[str, str]) -> None:
    svc = ctx.service
    with pytest.raises(InvalidInputError):
        svc.create_profile_from_env("OPENAI_API_KEY")
    with pytest.raises(InvalidInputError):
        svc.create_profile_from_env("HOME")

    environ["OPENAI_API_KEY"] = "sk-env"
    assert svc.detect_available_env_vars() == {"OPENAI_API_KEY": "codex"}

    first = svc.create_profile_from_env("OPENAI_API_KEY")
    second = svc.create_profile_from_env("OPENAI_API_KEY")
    assert (first.name, second.name) == ("codex", "codex-1")

    record = json.loads(ctx.credentials.managed_env_path("codex", "codex").read_text(encoding="utf-8"))
    assert record["envVarName"] == "OPENAI_API_KEY"
    assert record["envVarValue"] == "sk-env"
    assert first.providers["codex"].credential_source == "managed"

    named = svc.create_profile_from_env("OPENAI_API_KEY", "mine")
    assert named.name == "mine"


def test_create_profile_from_config(ctx: AppContext) -> None:
    svc = ctx.service
    with pytest.raises(InvalidInputError):
        svc.create_profile_from_config("cfg")

    claude = ctx.settings.home / ".claude"
    claude.mkdir()
    (claude / "settings.json").write_text('{"env": {"OTHER": "1"}}', encoding="utf-8")
    with pytest.raises(InvalidInputError):
        svc.create_profile_from_config("cfg")
    assert not ctx.profiles.exists("cfg")

    (claude / "settings.json").write_text(
        '{"env": {"ANTHROPIC_AUTH_TOKEN": "tok", "ANTHROPIC_BASE_URL": "https://gw"}}', encoding="utf-8"
    )
    assert svc.create_profile_from_config("cfg") == ["claude"]
    record = ctx.credentials.load_managed("claude", "cfg")
    assert record["apiKey"] == "tok"
    assert record["baseUrl"] == "https://gw"


def test_create_profile_from_native(ctx: AppContext) -> None:
    native = ctx.settings.home / ".codex" / "auth.json"
    native.parent.mkdir()
    native.write_text('{"tokens": {"access_token": "a"}}', encoding="utf-8")

    ctx.service.create_profile_from_native("copied", "codex")
    assert ctx.profiles.get_provider_auth("copied", "codex").credential_source == "managed"
    assert ctx.credentials.load_managed("codex", "copied") == {"tokens": {"access_token": "a"}}

    ctx.service.create_profile_from_native("linked", "codex", copy_to_managed=False)
    binding = ctx.profiles.get_provider_auth("linked", "codex")
    assert binding.credential_source == "native"
    assert binding.credential_path == str(native)


def test_add_and_remove_provider(ctx: AppContext) -> None:
    svc = ctx.service
    svc.create_profile("work")
    warnings = svc.add_provider("work", "claude", api_key="bad-key")
    assert len(warnings) == 1
    assert ctx.profiles.get_last_provider("work") == "claude"
    with pytest.raises(InvalidInputError):
        svc.add_provider("work", "claude", api_key="sk-ant-1")

    svc.remove_provider("work", "claude")
    assert ctx.credentials.load_managed("claude", "work") is None
    with pytest.raises(InvalidInputError):
        svc.remove_provider("work", "claude")


def test_credential_info_masks_secrets(ctx: AppContext) -> None:
    ctx.service.authenticate_with_api_key("work", "gemini", "AIzaSyVerySecretValue", api_key_type="gemini")
    info = ctx.service.get_profile_credential_info("work")

    details = info["gemini"]
    assert details["source"] == "managed"
    assert details["valid"] is True
    assert details["apiKeyType"] == "gemini"
    assert "VerySecret" not in details["apiKey"]
    assert details["apiKey"].startswith("AIza")


def test_has_valid_credentials(ctx: AppContext) -> None:
    svc = ctx.service
    svc.create_profile("empty")
    assert not svc.has_valid_credentials("empty")
    assert not svc.has_valid_credentials("missing")

    svc.authenticate_with_api_key("work", "codex", "sk-1")
    assert svc.has_valid_credentials("work")
    assert svc.has_valid_credentials("work", "codex")
    assert not svc.has_valid_credentials("work", "claude")


def test_logout_removes_binding(ctx: AppContext) -> None:
    ctx.service.authenticate_with_api_key("work", "claude", "sk-ant-1")
    messages = ctx.service.logout("work", "claude")
    assert messages
    assert ctx.profiles.get_provider_auth("work", "claude") is None
    assert ctx.credentials.load_managed("claude", "work") is None


def test_migrate_native_to_managed(ctx: AppContext) -> None:
    native = ctx.settings.home / ".claude" / ".credentials.json"
    native.parent.mkdir()
    native.write_text('{"claudeAiOauth": {"accessToken": "a"}}', encoding="utf-8")
    ctx.service.create_profile("work")
    ctx.profiles.set_provider_auth("work", "claude", ProviderBinding(credential_source="native"))
    ctx.profiles.set_provider_auth("work", "q", ProviderBinding(credential_source="native"))
    ctx.profiles.set_provider_auth("work", "codex", ProviderBinding(credential_source="native"))

    result = ctx.service.migrate_native_to_managed()

    assert result.migrated == ["work/claude"]
    assert len(result.warnings) == 2
    assert ctx.profiles.get_provider_auth("work", "claude").credential_source == "managed"
    assert ctx.profiles.get_provider_auth("work", "codex").credential_source == "native"


def test_migrate_env_to_managed(ctx: AppContext, environ: dict[str, str]) -> None:
    environ["GEMINI_API_KEY"] = "AIza-env"
    ctx.service.create_profile("work")
    ctx.profiles.set_provider_auth("work", "gemini", ProviderBinding(credential_source="env"))
    ctx.profiles.set_provider_auth("work", "claude", ProviderBinding(credential_source="env"))

    result = ctx.service.migrate_env_to_managed()

    assert result.migrated == ["work/gemini"]
    assert result.warnings == ["work/claude: no environment variable available to migrate"]
    assert ctx.credentials.resolve("gemini", "work").env_var_name == "GEMINI_API_KEY"


def test_status_rows(ctx: AppContext) -> None:
    ctx.service.authenticate_with_api_key("work", "codex", "sk-1")
    rows = {r.provider_id: r for r in ctx.service.status()}
    assert set(rows) == {"claude", "gemini", "codex", "q"}
    assert rows["codex"].bound and rows["codex"].status.valid
    assert not rows["claude"].bound
    assert rows["claude"].status.info is None
