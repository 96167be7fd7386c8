"""Claude: API key と OAuth の排他的な切替。"""

import json
from pathlib import Path

import pytest

from multicoder.context import AppContext
from multicoder.errors import ExternalProcessFailureError, MalformedCredentialFileError
from multicoder.provider_claude import api_key_format_warning


def _claude_dir(ctx: AppContext) -> Path:
    return ctx.settings.home / ".claude"


def _read(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def test_apply_api_key_removes_oauth_file(ctx: AppContext) -> None:
    claude = _claude_dir(ctx)
    claude.mkdir()
    (claude / ".credentials.json").write_text('{"claudeAiOauth": {"accessToken": "old"}}', encoding="utf-8")
    (claude / "settings.json").write_text('{"model": "opus", "env": {"OTHER": "1"}}', encoding="utf-8")

    ctx.credentials.save_api_key("claude", "work", "sk-ant-123", base_url="https://proxy.example")
    result = ctx.credentials.apply("claude", "work")

    assert result.needs_restart is True
    assert not (claude / ".credentials.json").exists()
    backups = list(claude.glob(".credentials.json.backup.*"))
    assert len(backups) == 1
    assert "old" in backups[0].read_text(encoding="utf-8")

    settings = _read(claude / "settings.json")
    assert settings["model"] == "opus"
    assert settings["env"] == {
        "OTHER": "1",
        "ANTHROPIC_AUTH_TOKEN": "sk-ant-123",
        "ANTHROPIC_BASE_URL": "https://proxy.example",
    }


def test_apply_api_key_without_base_url_drops_previous_one(ctx: AppContext) -> None:
    claude = _claude_dir(ctx)
    claude.mkdir()
    (claude / "settings.json").write_text(
        '{"env": {"ANTHROPIC_AUTH_TOKEN": "a", "ANTHROPIC_BASE_URL": "https://old"}}', encoding="utf-8"
    )
    ctx.credentials.save_api_key("claude", "work", "sk-ant-new")
    ctx.credentials.apply("claude", "work")

    assert _read(claude / "settings.json")["env"] == {"ANTHROPIC_AUTH_TOKEN": "sk-ant-new"}


def test_apply_oauth_strips_api_key_settings(ctx: AppContext) -> None:
    claude = _claude_dir(ctx)
    claude.mkdir()
    (claude / "settings.json").write_text(
        '{"theme": "dark", "env": {"ANTHROPIC_AUTH_TOKEN": "a", "ANTHROPIC_BASE_URL": "b"}}', encoding="utf-8"
    )
    envelope = {"accessToken": "at", "refreshToken": "rt", "expiresAt": 32503680000000}
    ctx.credentials.save_oauth_tokens("claude", "work", {"claudeAiOauth": envelope})

    result = ctx.credentials.apply("claude", "work")

    assert result.needs_restart is True
    assert _read(claude / ".credentials.json") == {"claudeAiOauth": envelope}
    assert _read(claude / "settings.json") == {"theme": "dark"}


def test_env_var_record_applies_as_api_key(ctx: AppContext) -> None:
    ctx.credentials.save_env_var("claude", "work", "ANTHROPIC_API_KEY", "sk-ant-env")
    ctx.credentials.apply("claude", "work")
    settings = _read(_claude_dir(ctx) / "settings.json")
    assert settings["env"]["ANTHROPIC_AUTH_TOKEN"] == "sk-ant-env"


def test_corrupt_settings_surfaces_as_malformed(ctx: AppContext) -> None:
    claude = _claude_dir(ctx)
    claude.mkdir()
    (claude / "settings.json").write_text("{oops", encoding="utf-8")
    ctx.credentials.save_api_key("claude", "work", "sk-ant-1")

    with pytest.raises(MalformedCredentialFileError) as ei:
        ctx.credentials.apply("claude", "work")
    assert ei.value.path == claude / "settings.json"


def test_native_source_is_left_alone(ctx: AppContext) -> None:
    claude = _claude_dir(ctx)
    claude.mkdir()
    native = claude / ".credentials.json"
    native.write_text('{"claudeAiOauth": {"accessToken": "x"}}', encoding="utf-8")

    result = ctx.credentials.apply("claude", "nobody")
    assert result.needs_restart is False
    assert native.read_text(encoding="utf-8") == '{"claudeAiOauth": {"accessToken": "x"}}'


def test_api_key_format_warning() -> None:
    assert api_key_format_warning("sk-ant-abc") is None
    assert api_key_format_warning("sk-abc") is None
    assert "sk-ant-" in api_key_format_warning("abc")


def test_login_with_api_key_binds_profile(ctx: AppContext) -> None:
    translator = ctx.registry.get("claude")
    warnings = translator.login_with_api_key("work", "not-a-key")

    assert len(warnings) == 1
    binding = ctx.profiles.get_provider_auth("work", "claude")
    assert binding is not None
    assert binding.credential_source == "managed"
    assert ctx.credentials.load_managed("claude", "work")["apiKey"] == "not-a-key"


def test_oauth_login_captures_native_file(ctx: AppContext) -> None:
    claude = _claude_dir(ctx)
    calls = []

    def fake_cli(cli):
        calls.append(cli.command)
        claude.mkdir(exist_ok=True)
        (claude / ".credentials.json").write_text('{"claudeAiOauth": {"accessToken": "fresh"}}', encoding="utf-8")
        return 0

    ctx.registry.deps.run_cli = fake_cli
    ctx.registry.get("claude").authenticate("oauth", "work")

    assert calls == [["claude", "setup-token"]]
    assert ctx.credentials.load_managed("claude", "work") == {"claudeAiOauth": {"accessToken": "fresh"}}
    assert ctx.profiles.get_provider_auth("work", "claude").credential_source == "managed"


def test_oauth_login_without_file_fails(ctx: AppContext) -> None:
    ctx.registry.deps.run_cli = lambda cli: 0
    with pytest.raises(ExternalProcessFailureError):
        ctx.registry.get("claude").authenticate("oauth", "work")
    assert not ctx.profiles.exists("work")
