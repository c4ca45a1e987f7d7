from __future__ import annotations
from pathlib import Path
import pytest


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--ci",
        action="store_true",
        default=False,
        help="Enable CI-only tests",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    if not config.getoption("--ci"):
        skip_no_ci = pytest.mark.skip(reason="Only run when --ci is given")
        for item in items:
            if "ci_only" in item.keywords:
                item.add_marker(skip_no_ci)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    # Keep tests away from the real home directory, shell profile, and
    # GitHub credentials
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("USERPROFILE", str(tmp_path / "home"))
    monkeypatch.setenv("GRIP_DATA_DIR", str(tmp_path / "grip-data"))
    monkeypatch.setenv("GRIP_CONFIG_DIR", str(tmp_path / "grip-config"))
    monkeypatch.setenv("GITHUB_TOKEN", "test-token")
    monkeypatch.setenv("SHELL", "/bin/sh")
