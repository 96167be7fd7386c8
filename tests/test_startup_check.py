import os
from pathlib import Path

import pytest

from multicoder.provider_config import ProviderCatalog
from multicoder.startup_check import run_startup_check


def test_startup_check_lists_provider_clis(tmp_path: Path) -> None:
    results = run_startup_check(catalog=ProviderCatalog.for_home(tmp_path), config_dir=tmp_path / ".multicoder")
    names = [r.name for r in results]
    assert "claude CLI" in names
    assert "gemini CLI" in names
    assert "codex CLI" in names
    assert "q CLI" in names
    assert results[-1].ok
    assert results[-1].detail == "not created yet"


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
def test_startup_check_flags_open_credentials_dir(tmp_path: Path) -> None:
    creds = tmp_path / ".multicoder" / "credentials"
    creds.mkdir(parents=True)
    creds.chmod(0o755)
    result = run_startup_check(catalog=ProviderCatalog.for_home(tmp_path), config_dir=tmp_path / ".multicoder")[-1]
    assert not result.ok
    assert "expected 700" in result.detail

    creds.chmod(0o700)
    result = run_startup_check(catalog=ProviderCatalog.for_home(tmp_path), config_dir=tmp_path / ".multicoder")[-1]
    assert result.ok
