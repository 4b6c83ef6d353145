from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from src.video_restyle.preflight import CONFIG_ENV_VAR, ROOT_ENV_VAR
from tests.helpers.restyle_env import make_workspace


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's workspace settings out of the suite."""

    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.delenv(ROOT_ENV_VAR, raising=False)


@pytest.fixture
def runner() -> CliRunner:
    """Provide a Click runner configured for CLI smoke tests."""

    return CliRunner()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Nine raw frames, the example job template and a stride-2 config."""

    return make_workspace(tmp_path)
