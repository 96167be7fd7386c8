"""Amazon Q: 検出のみ。"""

import json
from pathlib import Path

import pytest

from multicoder.context import AppContext
from multicoder.errors import ExternalProcessFailureError, InvalidInputError


def _write(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


def test_detect_candidate_file(ctx: AppContext) -> None:
    path = ctx.settings.home / ".amazon-q" / "credentials.json"
    _write(path, {"accessToken": "t", "expiresAt": "2999-01-01T00:00:00Z"})

    status = ctx.registry.get("q").detect("work")
    assert status.valid
    assert status.info.location_path == path
    assert status.info.source == "native"


def test_detect_skips_expired_sso_cache(ctx: AppContext) -> None:
    cache = ctx.settings.home / ".aws" / "sso" / "cache"
    _write(cache / "a.json", {"accessToken": "old", "expiresAt": "2000-01-01T00:00:00Z"})
    _write(cache / "b.json", {"clientId": "no token here"})
    assert not ctx.registry.get("q").detect("work").valid

    _write(cache / "c.json", {"accessToken": "new", "expiresAt": "2999-01-01T00:00:00Z"})
    status = ctx.registry.get("q").detect("work")
    assert status.valid
    assert status.info.location_path == cache / "c.json"


def test_apply_is_a_no_op(ctx: AppContext) -> None:
    _write(ctx.settings.home / ".aws" / "sso" / "cache" / "s.json", {"accessToken": "t"})
    result = ctx.credentials.apply("q", "work")
    assert result.needs_restart is False
    assert result.messages


def test_api_key_login_unsupported(ctx: AppContext) -> None:
    with pytest.raises(InvalidInputError):
        ctx.registry.get("q").login_with_api_key("work", "key")


def test_oauth_login_binds_native_session(ctx: AppContext) -> None:
    cache = ctx.settings.home / ".aws" / "sso" / "cache"

    def fake_cli(cli):
        assert cli.command == ["q", "login", "--license", "free"]
        _write(cache / "token.json", {"accessToken": "t", "expiresAt": "2999-01-01T00:00:00Z"})
        return 0

    ctx.registry.deps.run_cli = fake_cli
    ctx.registry.get("q").authenticate("oauth", "work")

    binding = ctx.profiles.get_provider_auth("work", "q")
    assert binding.credential_source == "native"
    assert binding.credential_path == str(cache / "token.json")
    assert binding.expires_at is not None


def test_oauth_login_without_session_fails(ctx: AppContext) -> None:
    ctx.registry.deps.run_cli = lambda cli: 0
    with pytest.raises(ExternalProcessFailureError):
        ctx.registry.get("q").authenticate("oauth", "work")
