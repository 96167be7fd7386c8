"""multicoder CLI エントリポイント。"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import typer
from rich.console import Console

from multicoder.context import AppContext, build_context
from multicoder.errors import InvalidInputError, MulticoderError
from multicoder.format import format_auth_method, format_timestamp, mask_secret
from multicoder.startup_check import run_startup_check

APP_HELP = "🔑 multicoder: Claude / Gemini / Codex / Amazon Q の認証をプロファイルで切り替えるCLI"

app = typer.Typer(add_completion=False, help=APP_HELP)
profile_app = typer.Typer(add_completion=False, help="プロファイルの作成・切替・削除")
env_app = typer.Typer(add_completion=False, help="環境変数の永続化（user / system）")
app.add_typer(profile_app, name="profile")
app.add_typer(env_app, name="env")

console = Console()

_SECRET_HINTS = ("KEY", "TOKEN", "SECRET", "PASSWORD")


def _ctx() -> AppContext:
    return build_context(console=console)


@contextmanager
def _errors() -> Iterator[None]:
    try:
        yield
    except (MulticoderError, OSError) as e:
        console.print(f"❌ {e}", style="red", markup=False)
        raise typer.Exit(code=1) from None


def _print_warnings(warnings: list[str]) -> None:
    for w in warnings:
        console.print(f"⚠️  {w}", style="yellow")


def _profile_or_current(ctx: AppContext, profile: str | None) -> str:
    if profile:
        return profile
    return ctx.profiles.get_current_name() or "default"


# --- profile ---


@profile_app.command("list")
def profile_list() -> None:
    """プロファイル一覧。"""
    with _errors():
        ctx = _ctx()
        profiles = ctx.service.list_profiles()
        if not profiles:
            console.print("(no profiles)")
            console.print("`multicoder login <provider> --profile <name>` で作成できます", style="dim")
            return
        current = ctx.profiles.get_current_name()
        for p in profiles:
            marker = "*" if p.name == current else " "
            providers = ", ".join(sorted(p.providers)) or "-"
            console.print(
                f"{marker} {p.name}  ({providers})  permission={p.permission_mode}"
                f"  last_used={format_timestamp(p.last_used_at)}"
            )


@profile_app.command("create")
def profile_create(
    name: str = typer.Argument(..., help="プロファイル名"),
    permission_mode: str | None = typer.Option(None, "--permission-mode", help="ask / allow / deny"),
    model: str | None = typer.Option(None, "--model", help="既定のモデル"),
) -> None:
    """空のプロファイルを作る（プロバイダは login / add-provider で追加）。"""
    with _errors():
        profile = _ctx().service.create_profile(name, permission_mode=permission_mode, model=model)
    console.print(f"✅ プロファイルを作成しました: {profile.name}", style="green")


@profile_app.command("switch")
def profile_switch(name: str = typer.Argument(..., help="切り替え先のプロファイル名")) -> None:
    """プロファイルを切り替え、各プロバイダの認証ファイルを書き換える。"""
    with _errors():
        result = _ctx().service.switch_profile(name)

    for provider_id in result.applied:
        console.print(f"  ✅ {provider_id}", style="green")
    for message in result.messages:
        console.print(f"  {message}", style="dim")
    _print_warnings(result.warnings)
    for error in result.errors:
        console.print(f"  ❌ {error}", style="red")
    if result.needs_restart:
        console.print(
            f"🔄 Restart running sessions of: {', '.join(result.restart_required)}",
            style="cyan",
        )
    if not result.success:
        console.print(f"⚠️  {name} に切り替えました（一部のプロバイダで失敗）", style="yellow")
        raise typer.Exit(code=1)
    console.print(f"✅ {name} に切り替えました", style="bold green")


@profile_app.command("delete")
def profile_delete(
    name: str = typer.Argument(..., help="削除するプロファイル名"),
    yes: bool = typer.Option(False, "--yes", "-y", help="確認しない"),
) -> None:
    """プロファイルと、その managed 認証情報を削除する。"""
    if not yes and not typer.confirm(f"Delete profile '{name}' and its stored credentials?"):
        raise typer.Exit(code=1)
    with _errors():
        current = _ctx().service.delete_profile(name)
    console.print(f"🗑️  削除しました: {name}", style="green")
    console.print(f"current: {current or '(none)'}", style="dim")


@profile_app.command("current")
def profile_current() -> None:
    """現在のプロファイル名。"""
    with _errors():
        profile = _ctx().service.get_current_profile()
    if profile is None:
        console.print("(no current profile)")
        raise typer.Exit(code=1)
    console.print(profile.name)


@profile_app.command("create-from-env")
def profile_create_from_env(
    env_var: str | None = typer.Argument(None, help="例: ANTHROPIC_API_KEY（省略で検出結果を表示）"),
    name: str | None = typer.Option(None, "--name", help="プロファイル名（省略時はプロバイダ名）"),
) -> None:
    """環境変数の API key からプロファイルを作る。"""
    with _errors():
        ctx = _ctx()
        if env_var is None:
            detected = ctx.service.detect_available_env_vars()
            if not detected:
                console.print("(no supported API key environment variables are set)")
                return
            for var, provider_id in detected.items():
                console.print(f"- {var} -> {provider_id}")
            return
        profile = ctx.service.create_profile_from_env(env_var, name)
    console.print(f"✅ {env_var} からプロファイルを作成しました: {profile.name}", style="green")


@profile_app.command("create-from-config")
def profile_create_from_config(name: str = typer.Argument(..., help="プロファイル名")) -> None:
    """~/.claude/settings.json の API key からプロファイルを作る。"""
    with _errors():
        providers = _ctx().service.create_profile_from_config(name)
    console.print(f"✅ {name} を作成しました ({', '.join(providers)})", style="green")


@profile_app.command("migrate-to-managed")
def profile_migrate_to_managed() -> None:
    """env 参照の binding を managed な環境変数レコードに移す。"""
    with _errors():
        result = _ctx().service.migrate_env_to_managed()
    for item in result.migrated:
        console.print(f"  ✅ {item}", style="green")
    _print_warnings(result.warnings)
    if not result.migrated:
        console.print("(nothing to migrate)")


@profile_app.command("migrate-native")
def profile_migrate_native() -> None:
    """native 参照の binding をネイティブファイルのコピー（managed）に移す。"""
    with _errors():
        result = _ctx().service.migrate_native_to_managed()
    for item in result.migrated:
        console.print(f"  ✅ {item}", style="green")
    _print_warnings(result.warnings)
    if not result.migrated:
        console.print("(nothing to migrate)")


@profile_app.command("add-provider")
def profile_add_provider(
    profile: str = typer.Argument(..., help="プロファイル名"),
    provider: str = typer.Argument(..., help="claude / gemini / codex / q"),
    api_key: str | None = typer.Option(None, "--api-key", help="API key を managed として保存"),
    copy_to_managed: bool = typer.Option(False, "--copy-to-managed", help="ネイティブの認証ファイルをコピーする"),
) -> None:
    """既存プロファイルにプロバイダを追加する。"""
    with _errors():
        warnings = _ctx().service.add_provider(profile, provider, api_key=api_key, copy_to_managed=copy_to_managed)
    _print_warnings(warnings)
    console.print(f"✅ {provider} を {profile} に追加しました", style="green")


@profile_app.command("remove-provider")
def profile_remove_provider(
    profile: str = typer.Argument(..., help="プロファイル名"),
    provider: str = typer.Argument(..., help="claude / gemini / codex / q"),
    keep_credentials: bool = typer.Option(False, "--keep-credentials", help="managed 認証情報を残す"),
) -> None:
    """プロファイルからプロバイダを外す。"""
    with _errors():
        _ctx().service.remove_provider(profile, provider, clear_credentials=not keep_credentials)
    console.print(f"✅ {provider} を {profile} から外しました", style="green")


# --- login / logout ---


def _api_key_request(
    provider: str,
    *,
    anthropic_api_key: str | None,
    anthropic_base_url: str | None,
    gemini_api_key: str | None,
    google_api_key: str | None,
    project_id: str | None,
    location: str | None,
    openai_api_key: str | None,
    openai_base_url: str | None,
    azure_openai_api_key: str | None,
    azure_resource_name: str | None,
) -> tuple[str, dict] | None:
    """フラグの組み合わせを検証して (api_key, options) を返す。フラグ無しなら None。"""
    if anthropic_base_url and not anthropic_api_key:
        raise InvalidInputError("--anthropic-base-url requires --anthropic-api-key")
    if openai_base_url and not openai_api_key:
        raise InvalidInputError("--openai-base-url requires --openai-api-key")
    if azure_resource_name and not azure_openai_api_key:
        raise InvalidInputError("--azure-resource-name requires --azure-openai-api-key")
    if (project_id or location) and not google_api_key:
        raise InvalidInputError("--project-id / --location require --google-api-key")
    if gemini_api_key and google_api_key:
        raise InvalidInputError("Use either --gemini-api-key or --google-api-key, not both")
    if openai_api_key and azure_openai_api_key:
        raise InvalidInputError("Use either --openai-api-key or --azure-openai-api-key, not both")

    flags_by_provider = {
        "claude": [anthropic_api_key],
        "gemini": [gemini_api_key, google_api_key],
        "codex": [openai_api_key, azure_openai_api_key],
    }
    for other, values in flags_by_provider.items():
        if other != provider and any(values):
            raise InvalidInputError(f"API key flags for {other} cannot be used with `login {provider}`")

    if provider == "claude" and anthropic_api_key:
        return anthropic_api_key, {"base_url": anthropic_base_url}
    if provider == "gemini" and gemini_api_key:
        return gemini_api_key, {"api_key_type": "gemini"}
    if provider == "gemini" and google_api_key:
        if project_id or location:
            if not (project_id and location):
                raise InvalidInputError("Vertex AI requires both --project-id and --location")
            return google_api_key, {"api_key_type": "vertex", "project_id": project_id, "location": location}
        return google_api_key, {"api_key_type": "google"}
    if provider == "codex" and openai_api_key:
        return openai_api_key, {"base_url": openai_base_url}
    if provider == "codex" and azure_openai_api_key:
        if not azure_resource_name:
            raise InvalidInputError("--azure-openai-api-key requires --azure-resource-name")
        return azure_openai_api_key, {"azure": True, "azure_resource_name": azure_resource_name}
    return None


@app.command()
def login(
    provider: str = typer.Argument(..., help="claude / gemini / codex / q"),
    profile: str | None = typer.Option(None, "--profile", "-p", help="プロファイル名（省略時は current）"),
    anthropic_api_key: str | None = typer.Option(None, "--anthropic-api-key"),
    anthropic_base_url: str | None = typer.Option(None, "--anthropic-base-url"),
    gemini_api_key: str | None = typer.Option(None, "--gemini-api-key"),
    google_api_key: str | None = typer.Option(None, "--google-api-key"),
    project_id: str | None = typer.Option(None, "--project-id", help="Vertex AI の Project ID"),
    location: str | None = typer.Option(None, "--location", help="Vertex AI の Location"),
    openai_api_key: str | None = typer.Option(None, "--openai-api-key"),
    openai_base_url: str | None = typer.Option(None, "--openai-base-url"),
    azure_openai_api_key: str | None = typer.Option(None, "--azure-openai-api-key"),
    azure_resource_name: str | None = typer.Option(None, "--azure-resource-name"),
    method: str | None = typer.Option(None, "--method", help="認証方法 (例: oauth / api-key / use-existing)"),
) -> None:
    """プロバイダにログインしてプロファイルに紐づける。"""
    with _errors():
        request = _api_key_request(
            provider,
            anthropic_api_key=anthropic_api_key,
            anthropic_base_url=anthropic_base_url,
            gemini_api_key=gemini_api_key,
            google_api_key=google_api_key,
            project_id=project_id,
            location=location,
            openai_api_key=openai_api_key,
            openai_base_url=openai_base_url,
            azure_openai_api_key=azure_openai_api_key,
            azure_resource_name=azure_resource_name,
        )
        ctx = _ctx()
        translator = ctx.registry.get(provider)
        profile_name = _profile_or_current(ctx, profile)

        if request is not None:
            api_key, options = request
            warnings = ctx.service.authenticate_with_api_key(profile_name, provider, api_key, **options)
            _print_warnings(warnings)
            console.print(
                f"✅ {translator.name}: API key ({mask_secret(api_key)}) を {profile_name} に保存しました",
                style="green",
            )
            return

        options_list = translator.get_auth_options(profile_name)
        if method is None:
            for i, option in enumerate(options_list, start=1):
                console.print(f"  {i}. {option.label} - {option.description}")
            choice = typer.prompt("認証方法を選んでください", type=int, default=1)
            if not 1 <= choice <= len(options_list):
                raise InvalidInputError(f"Invalid choice: {choice}")
            method = options_list[choice - 1].id
        elif method not in [o.id for o in options_list]:
            valid = ", ".join(o.id for o in options_list)
            raise InvalidInputError(f"Unknown method for {provider}: {method} (available: {valid})")

        ctx.service.login(profile_name, provider, method)
    console.print(f"✅ {translator.name} にログインしました（profile: {profile_name}）", style="green")
    console.print(f"適用するには: multicoder profile switch {profile_name}", style="dim")


@app.command()
def logout(
    provider: str = typer.Argument(..., help="claude / gemini / codex / q"),
    profile: str | None = typer.Option(None, "--profile", "-p", help="プロファイル名（省略時は current）"),
) -> None:
    """プロファイルからプロバイダの managed 認証情報を消す。"""
    with _errors():
        ctx = _ctx()
        messages = ctx.service.logout(_profile_or_current(ctx, profile), provider)
    for message in messages:
        console.print(f"  {message}")


@app.command()
def status(
    profile: str | None = typer.Option(None, "--profile", "-p", help="プロファイル名（省略時は current）"),
) -> None:
    """プロバイダごとの認証状態。"""
    with _errors():
        ctx = _ctx()
        name = profile or ctx.profiles.get_current_name()
        if profile:
            ctx.profiles.require(profile)
        rows = ctx.service.status(name)
    console.print(f"profile: {name or '(none)'}", style="bold")
    for row in rows:
        if row.status.info is None:
            console.print(f"  ⚪ {row.name}: not authenticated", style="dim")
            continue
        icon = "✅" if row.status.valid else "❌"
        expires = format_timestamp(row.status.info.expires_at)
        bound = "" if row.bound else " (not in profile)"
        console.print(f"  {icon} {row.name}: {row.status.source}{bound}  expires={expires}")


@app.command()
def whoami() -> None:
    """現在のプロファイルと認証方法。"""
    with _errors():
        ctx = _ctx()
        profile = ctx.service.get_current_profile()
        if profile is None:
            console.print("(no current profile)")
            raise typer.Exit(code=1)
        info = ctx.service.get_profile_credential_info(profile.name)
    console.print(f"profile: {profile.name}", style="bold")
    for provider_id, details in info.items():
        line = f"  {provider_id}: {format_auth_method(provider_id, details)}"
        if details.get("apiKey"):
            line += f" ({details['apiKey']})"
        console.print(line)


@app.command()
def doctor() -> None:
    """プロバイダ CLI の有無と設定ディレクトリのチェック。"""
    with _errors():
        ctx = _ctx()
        results = run_startup_check(catalog=ctx.catalog, config_dir=ctx.settings.config_dir)
    for r in results:
        icon = "✅" if r.ok else "⚠️ "
        console.print(f"  {icon} {r.name}: {r.detail}", style="green" if r.ok else "yellow")


# --- env ---


def _mask_env(name: str, value: str) -> str:
    return mask_secret(value) if any(h in name.upper() for h in _SECRET_HINTS) else value


@env_app.command("get")
def env_get(
    name: str = typer.Argument(...),
    scope: str = typer.Option("user", "--scope", help="user / system"),
) -> None:
    with _errors():
        value = _ctx().env.get(name, scope)
    if value is None:
        raise typer.Exit(code=1)
    console.print(value, markup=False, highlight=False)


@env_app.command("set")
def env_set(
    name: str = typer.Argument(...),
    value: str = typer.Argument(...),
    scope: str = typer.Option("user", "--scope", help="user / system"),
) -> None:
    """環境変数を永続化する（新しいシェルから有効）。"""
    with _errors():
        _ctx().env.set(name, value, scope)
    console.print(f"✅ {name} を保存しました (scope={scope})", style="green")


@env_app.command("unset")
def env_unset(
    name: str = typer.Argument(...),
    scope: str = typer.Option("user", "--scope", help="user / system"),
) -> None:
    with _errors():
        _ctx().env.remove(name, scope)
    console.print(f"✅ {name} を削除しました (scope={scope})", style="green")


@env_app.command("list")
def env_list(scope: str = typer.Option("user", "--scope", help="user / system")) -> None:
    """永続化されている環境変数（秘密っぽい値は伏せる）。"""
    with _errors():
        env_vars = _ctx().env.list(scope)
    if not env_vars:
        console.print("(none)")
        return
    for name in sorted(env_vars):
        console.print(f"{name}={_mask_env(name, env_vars[name])}", markup=False, highlight=False)


if __name__ == "__main__":
    app()
