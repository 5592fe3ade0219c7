# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Q panel test suite.

This module provides foundational fixtures used across all test modules:
- Stand-in ``q`` executables (small Python scripts) for process tests
- Panel configurations rooted in temporary directories
- Sample project trees for discovery tests

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import json
import os
import stat
import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

from qpanel.core.config import PanelConfig

# =============================================================================
# Stand-in Q CLI scripts
# =============================================================================

# Prints its arguments, working directory and color env as one JSON line
ECHO_ARGS_SCRIPT = """
import json, os, sys
print(json.dumps({
    "argv": sys.argv[1:],
    "cwd": os.getcwd(),
    "no_color": os.environ.get("NO_COLOR"),
    "force_color": os.environ.get("FORCE_COLOR"),
}))
"""

# Announces itself, then blocks until signalled
SLEEPER_SCRIPT = """
import sys, time
print("ready", flush=True)
time.sleep(30)
"""

# Same, but survives SIGTERM so only SIGKILL ends it
STUBBORN_SCRIPT = """
import signal, sys, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("ready", flush=True)
time.sleep(30)
"""


@pytest.fixture(autouse=True)
def clean_panel_env(monkeypatch):
    """Keep host environment overrides out of config loading."""
    for name in ("QPANEL_CONFIG", "QPANEL_CLI_BINARY", "QPANEL_HOST", "QPANEL_PORT"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_q(tmp_path: Path) -> Callable[[str], Path]:
    """Factory writing an executable stand-in for the ``q`` binary.

    The script body is Python, run by the interpreter executing the tests.

    Example:
        def test_something(fake_q):
            binary = fake_q("print('hi')")
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)
    counter = iter(range(1000))

    def _make(source: str) -> Path:
        script = bin_dir / f"fake-q-{next(counter)}"
        script.write_text(f"#!{sys.executable}\n" + textwrap.dedent(source).lstrip())
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _make


@pytest.fixture
def echo_q(fake_q) -> Path:
    """Stand-in q that prints its argv, cwd and color env as JSON."""
    return fake_q(ECHO_ARGS_SCRIPT)


@pytest.fixture
def sleeper_q(fake_q) -> Path:
    """Stand-in q that prints 'ready' then sleeps until signalled."""
    return fake_q(SLEEPER_SCRIPT)


@pytest.fixture
def stubborn_q(fake_q) -> Path:
    """Stand-in q that ignores SIGTERM."""
    return fake_q(STUBBORN_SCRIPT)


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """An existing project directory to run the CLI in."""
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., PanelConfig]:
    """Factory for a PanelConfig whose stores live under ``tmp_path``.

    Returns:
        Callable taking the CLI binary and any PanelConfig field overrides.
    """

    def _make(cli_binary: Path | str = "q", **overrides) -> PanelConfig:
        values = {
            "cli_binary": str(cli_binary),
            "data_dir": tmp_path / "data",
            "mcp_config_path": tmp_path / "amazonq" / "mcp.json",
            "project_roots": [tmp_path / "roots"],
            "abort_grace_period": 2.0,
        }
        values.update(overrides)
        return PanelConfig(**values)

    return _make


@pytest.fixture
def panel_config(make_config) -> PanelConfig:
    """Configuration with default binary name and temporary stores."""
    return make_config()


# =============================================================================
# Project Tree Fixtures
# =============================================================================


@pytest.fixture
def project_tree(tmp_path: Path) -> Path:
    """Create a projects root with a mix of project and non-project directories.

    Creates (under ``<tmp>/roots``):
        - app/       package.json named "my-app"
        - lib/       pyproject.toml named "pylib"
        - docs/      README.md with a "# Docs Site" heading
        - plain/     Makefile only
        - empty/     no project markers
        - node_modules/, .hidden/  skipped even though they look like projects

    Returns:
        Path to the root directory.
    """
    root = tmp_path / "roots"
    root.mkdir(exist_ok=True)

    app = root / "app"
    app.mkdir()
    (app / "package.json").write_text(json.dumps({"name": "my-app", "version": "1.0.0"}))

    lib = root / "lib"
    lib.mkdir()
    (lib / "pyproject.toml").write_text('[project]\nname = "pylib"\nversion = "0.1.0"\n')

    docs = root / "docs"
    docs.mkdir()
    (docs / "README.md").write_text("Intro line\n# Docs Site\n\nMore text\n")

    plain = root / "plain"
    plain.mkdir()
    (plain / "Makefile").write_text("all:\n\techo ok\n")

    (root / "empty").mkdir()

    for skipped in ("node_modules", ".hidden"):
        path = root / skipped
        path.mkdir()
        (path / "package.json").write_text("{}")

    # A stray file at the root level is not a project
    (root / "notes.txt").write_text("not a project")

    return root


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "process: marks tests that spawn real child processes")


def pytest_collection_modifyitems(config, items):
    """Skip process tests where POSIX signals and shebang scripts are unavailable."""
    if os.name == "posix":
        return
    skip = pytest.mark.skip(reason="requires POSIX processes")
    for item in items:
        if "process" in item.keywords:
            item.add_marker(skip)
