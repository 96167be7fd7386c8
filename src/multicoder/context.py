"""実行コンテキストの組み立て。

CLI もテストもここで全部品をつなぐ。グローバルな状態は持たない。
"""

from __future__ import annotations

from collections.abc import MutableMapping
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console

from multicoder.cli_backend import CommandRunner
from multicoder.config import Settings, load_settings
from multicoder.credentials import CredentialStore
from multicoder.legacy import migrate_config_dir, migrate_env_files
from multicoder.logging_setup import setup_logging
from multicoder.profile_service import ProfileService
from multicoder.profile_store import ProfileStore
from multicoder.provider_base import ProviderDependencies
from multicoder.provider_config import ProviderCatalog
from multicoder.provider_registry import ProviderAuthRegistry
from multicoder.system_env import EnvironmentPersistence


@dataclass
class AppContext:
    settings: Settings
    catalog: ProviderCatalog
    credentials: CredentialStore
    profiles: ProfileStore
    env: EnvironmentPersistence
    registry: ProviderAuthRegistry
    service: ProfileService


def build_context(
    settings: Settings | None = None,
    *,
    home: Path | None = None,
    environ: MutableMapping[str, str] | None = None,
    platform: str | None = None,
    runner: CommandRunner | None = None,
    console: Console | None = None,
    configure_logging: bool = True,
) -> AppContext:
    if settings is None:
        settings = load_settings(home=home, environ=environ)

    if not settings.custom_config_dir:
        migrate_config_dir(settings.home, settings.config_dir)
        migrate_env_files(settings.home, settings.config_dir)

    if configure_logging:
        setup_logging(log_dir=settings.log_dir, level=settings.log_level)

    catalog = ProviderCatalog.for_home(settings.home, gemini_home=settings.gemini_home)
    credentials = CredentialStore(catalog, settings.credentials_dir)
    profiles = ProfileStore(
        settings.profiles_path,
        catalog=catalog,
        default_permission_mode=settings.default_permission_mode,
    )
    env = EnvironmentPersistence(
        home=settings.home,
        config_dir=settings.config_dir,
        platform=platform,
        environ=environ,
        runner=runner,
    )
    deps = ProviderDependencies(
        settings=settings,
        credential_store=credentials,
        profile_store=profiles,
        env=env,
        console=console or Console(),
    )
    registry = ProviderAuthRegistry(deps)
    credentials.attach_translators(registry)
    credentials.initialize()

    service = ProfileService(
        settings=settings,
        credential_store=credentials,
        profile_store=profiles,
        env=env,
        registry=registry,
    )
    return AppContext(
        settings=settings,
        catalog=catalog,
        credentials=credentials,
        profiles=profiles,
        env=env,
        registry=registry,
        service=service,
    )
