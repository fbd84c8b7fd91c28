"""Tests for the Command Line Interface (CLI) module."""

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from git_herd import cli
from git_herd.config import Config
from git_herd.constants import EXIT_CANCELLED
from git_herd.errors import SyncCancelled, SyncError
from git_herd.syncer import TIER_PULL, TIER_RESET, Outcome, RepoResult, SyncReport


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, mocker: MagicMock) -> Any:
    """Keeps logs and global config away from the real user directories."""
    mocker.patch("git_herd.cli.LOG_FILE", tmp_path / "state" / "herd.log")
    mocker.patch("git_herd.config.CONFIG_FILE", tmp_path / "missing.toml")
    # Wide enough that long temporary paths are never wrapped.
    mocker.patch("git_herd.cli.console", Console(width=250))
    Config._global_cache = None
    yield
    Config._global_cache = None


@pytest.fixture
def tree(tmp_path: Path) -> Path:
    """A root holding two repositories, one of them nested in a plain folder."""
    root = tmp_path / "root"
    (root / "alpha" / ".git").mkdir(parents=True)
    (root / "group" / "bravo" / ".git").mkdir(parents=True)
    return root


def make_report(root: Path, failing: bool) -> SyncReport:
    alpha, bravo = root / "alpha", root / "group" / "bravo"
    report = SyncReport()
    report.results[alpha] = RepoResult(alpha, Outcome.RECOVERED, TIER_PULL)
    if failing:
        error = SyncError(bravo, ["pull"], "exit status 1")
        report.results[bravo] = RepoResult(bravo, Outcome.STILL_FAILING, error=error)
    else:
        report.results[bravo] = RepoResult(bravo, Outcome.RECOVERED, TIER_RESET)
    return report


def test_main_without_command_prints_grouped_help(
    capsys: pytest.CaptureFixture,
) -> None:
    """Verifies that running with no subcommand shows the grouped help.

    Args:
        capsys (pytest.CaptureFixture): Pytest fixture for capturing stdout.
    """
    cli.main([])
    captured = capsys.readouterr()

    assert "Discovery:" in captured.out
    assert "Synchronization:" in captured.out
    assert "sync" in captured.out


def test_main_missing_path_is_fatal(
    tmp_path: Path, capsys: pytest.CaptureFixture
) -> None:
    """Verifies that an unusable root exits with status 1 and a FATAL message."""
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["list", str(tmp_path / "nowhere")])

    assert excinfo.value.code == 1
    assert "FATAL:" in capsys.readouterr().err


def test_sync_passes_discovered_repos_and_flags(
    tree: Path, mocker: MagicMock
) -> None:
    """Verifies that `sync` hands every discovered repository to the Syncer.

    Args:
        tree (Path): Fixture directory tree.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mock_syncer = mocker.patch("git_herd.cli.Syncer")
    mock_syncer.return_value.run.return_value = make_report(tree, failing=False)

    cli.main(["sync", str(tree), "--depth", "0", "--no-reset", "--timeout", "90s"])

    config = mock_syncer.call_args[0][0]
    assert config.depth == 0
    assert config.timeout == 90
    assert config.reset_fallback is False
    assert config.rebase_fallback is True

    repos = mock_syncer.return_value.run.call_args[0][0]
    assert repos == [tree / "alpha", tree / "group" / "bravo"]


def test_sync_failures_exit_zero_unless_strict(tree: Path, mocker: MagicMock) -> None:
    """Verifies that still-failing repositories only fail the run under --strict."""
    mock_syncer = mocker.patch("git_herd.cli.Syncer")
    mock_syncer.return_value.run.return_value = make_report(tree, failing=True)

    # Default: report and continue.
    cli.main(["sync", str(tree)])

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["sync", str(tree), "--strict"])
    assert excinfo.value.code == 1


def test_sync_strict_from_config_file(tree: Path, mocker: MagicMock) -> None:
    """Verifies that `strict = true` in herd.toml has the same effect as --strict."""
    (tree / "herd.toml").write_text("[sync]\nstrict = true\n")
    mock_syncer = mocker.patch("git_herd.cli.Syncer")
    mock_syncer.return_value.run.return_value = make_report(tree, failing=True)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["sync", str(tree)])
    assert excinfo.value.code == 1


def test_sync_cancelled_exits_130(
    tree: Path, mocker: MagicMock, capsys: pytest.CaptureFixture
) -> None:
    """Verifies that an interrupted run exits with the conventional SIGINT status."""
    mock_syncer = mocker.patch("git_herd.cli.Syncer")
    mock_syncer.return_value.run.side_effect = SyncCancelled(2)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["sync", str(tree)])

    assert excinfo.value.code == EXIT_CANCELLED
    assert "Interrupted" in capsys.readouterr().err


def test_print_report_lists_still_failing(
    tmp_path: Path, capsys: pytest.CaptureFixture
) -> None:
    """Verifies that the summary counts tiers and names failing repositories."""
    cli.print_report(make_report(tmp_path, failing=True))
    out = capsys.readouterr().out

    assert "Sync Report" in out
    assert "In sync: 1" in out
    assert "Still failing: 1" in out
    assert "bravo" in out
    assert "exit status 1" in out


def test_list_with_file_writes_paths(tree: Path, tmp_path: Path) -> None:
    """Verifies that `list --file` saves the discovered paths without remote lookups."""
    dest = tmp_path / "repos.txt"

    cli.main(["list", str(tree), "--file", str(dest)])

    assert dest.read_text().splitlines() == [
        str(tree / "alpha"),
        str(tree / "group" / "bravo"),
    ]


def test_list_shows_remotes(
    tree: Path, mocker: MagicMock, capsys: pytest.CaptureFixture
) -> None:
    """Verifies that `list` renders each repository with its remote url."""
    mocker.patch(
        "git_herd.cli.ops.collect_remotes",
        return_value={tree / "alpha": "https://example.com/alpha.git"},
    )

    cli.main(["list", str(tree)])
    out = capsys.readouterr().out

    assert "Found 2 repositories" in out
    assert "https://example.com/alpha.git" in out
    assert "none" in out


def test_import_failures_exit_one(
    tmp_path: Path, mocker: MagicMock, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Verifies that a failed clone during `import` fails the run."""
    monkeypatch.chdir(tmp_path)
    (tmp_path / "export.json").write_text('{"a": "https://example.com/a.git"}')
    mocker.patch(
        "git_herd.cli.ops.import_mapping",
        return_value={"a": SyncError(tmp_path / "a", ["clone"], "denied")},
    )

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["import", str(tmp_path)])
    assert excinfo.value.code == 1


def test_config_list_shows_reference(capsys: pytest.CaptureFixture) -> None:
    """Verifies that `config --list` prints the option reference."""
    cli.main(["config", "--list"])
    out = capsys.readouterr().out

    assert "reset_fallback" in out
    assert "max_log_size" in out


def test_config_command_opens_editor(mocker: MagicMock) -> None:
    """Verifies that the `config` command attempts to open the editor.

    Args:
        mocker (MagicMock): Pytest fixture for mocking.
    """
    # Mock the editor environment variable
    mocker.patch.dict("os.environ", {"EDITOR": "nano"})

    # Mock subprocess to avoid actually running nano
    mock_run = mocker.patch("subprocess.run")

    # Mock the CONFIG_FILE object entirely to support .exists() and str()
    mock_config_path = mocker.MagicMock(spec=Path)
    mock_config_path.exists.return_value = True
    mock_config_path.__str__.return_value = "/mock/config.toml"

    mocker.patch("git_herd.cli.CONFIG_FILE", mock_config_path)

    cli.open_config()

    # Verify that the correct command was executed
    args = mock_run.call_args[0][0]
    assert args[0] == "nano"
    assert "/mock/config.toml" in str(args[1])


def test_setup_logging_does_not_stack_handlers(tmp_path: Path) -> None:
    """Verifies that repeated setup replaces the previous handlers."""
    cli.setup_logging()
    first = len(cli.logger.handlers)
    cli.setup_logging(verbose=True)

    assert len(cli.logger.handlers) == first
    assert (tmp_path / "state" / "herd.log").exists()


def test_ctrl_c_during_scan_exits_130(
    tree: Path, mocker: MagicMock, capsys: pytest.CaptureFixture
) -> None:
    """Verifies that Ctrl-C before any handler is armed still exits cleanly."""
    mock_scanner = mocker.patch("git_herd.cli.Scanner")
    mock_scanner.return_value.scan.side_effect = KeyboardInterrupt

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["sync", str(tree)])

    assert excinfo.value.code == EXIT_CANCELLED
    assert "Interrupted" in capsys.readouterr().err
