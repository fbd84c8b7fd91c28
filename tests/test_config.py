"""Tests for the configuration management subsystem."""

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from git_herd.config import Config, ScanConfig, parse_size, parse_time, parse_workers


@pytest.fixture(autouse=True)
def clear_config_cache(tmp_path: Path, mocker: MagicMock) -> Any:
    """Ensures every test starts with a clean cache and no real global config."""
    mocker.patch("git_herd.config.CONFIG_FILE", tmp_path / "missing.toml")
    Config._global_cache = None
    yield
    Config._global_cache = None


def test_config_defaults() -> None:
    """Verifies that the configuration initializes with sensible defaults."""
    conf = Config()
    assert conf.scan.marker == ".git"
    assert conf.scan.workers == (os.cpu_count() or 1)
    assert conf.scan.follow_symlinks is False
    assert conf.sync.remote_name == "origin"
    assert conf.sync.depth == 1
    assert conf.sync.timeout == 600
    assert conf.sync.rebase_fallback and conf.sync.reset_fallback
    assert conf.sync.strict is False


def test_config_sections_are_immutable() -> None:
    """Verifies that configuration sections cannot be mutated in place."""
    conf = Config()
    with pytest.raises(dataclasses.FrozenInstanceError):
        conf.sync.depth = 5  # type: ignore[misc]


def test_config_load_merges_layers(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies the cascading merge logic (Defaults -> Global -> Local).

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    global_config_path = tmp_path / "global_config.toml"
    global_config_path.write_text(
        '[sync]\nremote_name = "upstream"\ntimeout = "5m"\n'
        "[scan]\nworkers = 3\n"
        'exclude = ["node_modules"]\n'
    )

    root = tmp_path / "root"
    root.mkdir()
    (root / "herd.toml").write_text(
        '[sync]\ntimeout = "30s"\n[scan]\nexclude = ["vendor"]\n'  # Should append
    )

    mocker.patch("git_herd.config.CONFIG_FILE", global_config_path)

    conf = Config.load(root)

    assert conf.sync.remote_name == "upstream"  # From Global
    assert conf.sync.timeout == 30  # Local overrides Global
    assert conf.scan.workers == 3
    assert conf.scan.exclude == ("node_modules", "vendor")

    # The cached global layer is not polluted by the local file.
    assert Config.load().sync.timeout == 300


def test_config_load_from_pyproject(tmp_path: Path) -> None:
    """Verifies that configuration can be loaded from pyproject.toml."""
    (tmp_path / "pyproject.toml").write_text(
        "[tool.herd.sync]\ndepth = 0\nstrict = true\n"
    )

    conf = Config.load(tmp_path)

    assert conf.sync.depth == 0
    assert conf.sync.strict is True


def test_config_syntax_error_keeps_defaults(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that a broken TOML file is reported and skipped."""
    (tmp_path / "herd.toml").write_text("[sync\ndepth = ")

    conf = Config.load(tmp_path)

    assert conf.sync.depth == 1
    assert "Config syntax error" in caplog.text


def test_with_overrides_skips_unset_values() -> None:
    """Verifies that None means 'flag not given' for command-line overrides."""
    base = Config()
    conf = base.with_overrides(
        scan={"workers": 2, "follow_symlinks": None},
        sync={"depth": None, "strict": True},
    )

    assert conf.scan.workers == 2
    assert conf.scan.follow_symlinks is False
    assert conf.sync.depth == 1
    assert conf.sync.strict is True
    # The base configuration is unchanged.
    assert base.sync.strict is False


def test_parse_size() -> None:
    """Verifies that human-readable sizes are correctly converted to bytes."""
    assert parse_size(100) == 100
    assert parse_size("100kb") == 102400
    assert parse_size("10 MB") == 10485760
    assert parse_size("1.5gb") == int(1.5 * 1024**3)

    with pytest.raises(ValueError, match=r"Invalid size format '100 bits'"):
        parse_size("100 bits")


def test_parse_time() -> None:
    """Verifies that human-readable times are correctly converted to seconds."""
    assert parse_time(50) == 50
    assert parse_time("30s") == 30
    assert parse_time("10 min") == 600
    assert parse_time("2 hrs") == 7200
    assert parse_time("0s") == 0

    with pytest.raises(ValueError, match=r"Invalid time format '10 lightyears'"):
        parse_time("10 lightyears")


def test_parse_workers() -> None:
    """Verifies that zero selects the CPU count and negatives are rejected."""
    assert parse_workers(4) == 4
    assert parse_workers("2") == 2
    assert parse_workers(0) == (os.cpu_count() or 1)

    with pytest.raises(ValueError):
        parse_workers(-1)


def test_config_invalid_keys_and_values(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that unknown keys are ignored and invalid values fallback to defaults.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        caplog (pytest.LogCaptureFixture): Pytest fixture for capturing logs.
    """
    caplog.set_level(logging.WARNING)

    (tmp_path / "herd.toml").write_text(
        "[sync]\n"
        'timeout = "forever"\n'
        "depth = -3\n"
        'fake_setting = "ignored"\n'
        "[limits]\n"
        'max_log_size = "10 gallons"\n'
    )

    conf = Config.load(tmp_path)

    assert conf.sync.timeout == 600
    assert conf.sync.depth == 1
    assert conf.limits.max_log_size == 5242880

    assert "Unknown config keys in [sync]: fake_setting" in caplog.text
    assert "Config error in [sync].timeout: Invalid time format" in caplog.text
    assert "Config error in [sync].depth: Invalid depth" in caplog.text
    assert "Config error in [limits].max_log_size: Invalid size format" in caplog.text


def test_scan_config_exclude_from_list() -> None:
    """Verifies that exclusion lists given as lists become tuples."""
    conf = Config().with_overrides(scan={"exclude": ["a", "b"]})
    assert conf.scan.exclude == ("a", "b")
    assert isinstance(conf.scan, ScanConfig)
