from __future__ import annotations

import io
from pathlib import Path

import pytest
from rich.console import Console

from multicoder.cli_backend import CommandResult
from multicoder.config import OAuthSettings, Settings
from multicoder.context import AppContext, build_context


class FakeRunner:
    """CommandRunner の代わり。呼び出しを記録し、固定の結果を返す。"""

    def __init__(self, result: CommandResult | None = None) -> None:
        self.result = result or CommandResult(returncode=0)
        self.calls: list[list[str]] = []

    def run(self, args: list[str]) -> CommandResult:
        self.calls.append(list(args))
        return self.result


@pytest.fixture()
def home(tmp_path: Path) -> Path:
    h = tmp_path / "home"
    h.mkdir()
    return h


@pytest.fixture()
def settings(home: Path) -> Settings:
    return Settings(
        home=home,
        config_dir=home / ".multicoder",
        custom_config_dir=True,
        oauth=OAuthSettings(timeout_seconds=1.0, poll_interval_seconds=0.5),
    )


@pytest.fixture()
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def environ() -> dict[str, str]:
    return {}


@pytest.fixture()
def ctx(settings: Settings, runner: FakeRunner, environ: dict[str, str]) -> AppContext:
    """linux 前提のコンテキスト。プロバイダ CLI は呼ばない。"""
    context = build_context(
        settings,
        environ=environ,
        platform="linux",
        runner=runner,
        console=Console(file=io.StringIO()),
        configure_logging=False,
    )

    def _no_cli(cli):
        raise AssertionError(f"provider CLI should not run: {cli.command}")

    context.registry.deps.run_cli = _no_cli
    return context
