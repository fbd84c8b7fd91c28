import argparse
import logging
import os
import subprocess
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import ops
from .cancel import CancellationController
from .config import CONFIG_FILE, Config, parse_time
from .constants import APP_NAME, EXIT_CANCELLED, LOG_FILE
from .errors import FatalError, SyncCancelled
from .scanner import Scanner
from .syncer import TIER_NAMES, SyncReport, Syncer

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)

_handlers: list[logging.Handler] = []


def setup_logging(verbose: bool = False, config: Config | None = None) -> None:
    """Configures the logging subsystem.

    Logs always go to stderr. A rotating log file in the state directory is
    added when it can be created.

    Args:
        verbose (bool, optional): Log at DEBUG instead of INFO.
        config (Config | None, optional): Supplies the log rotation size.
    """
    config = config or Config()
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # Repeated calls (tests, embedding) replace rather than stack handlers.
    for handler in _handlers:
        logger.removeHandler(handler)
        handler.close()
    _handlers.clear()

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    _handlers.append(stream_handler)

    try:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=config.limits.max_log_size,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        _handlers.append(file_handler)
    except OSError as e:
        err_console.print(f"[yellow]Log file disabled: {e}[/yellow]")

    for handler in _handlers:
        logger.addHandler(handler)


def load_config(root: Path, args: argparse.Namespace) -> Config:
    """Loads file configuration for ``root`` and layers CLI flags on top."""
    return Config.load(root).with_overrides(
        scan={
            "workers": getattr(args, "workers", None),
            "follow_symlinks": True if getattr(args, "follow_symlinks", False) else None,
        },
        sync={
            "depth": getattr(args, "depth", None),
            "timeout": getattr(args, "timeout", None),
            "rebase_fallback": False if getattr(args, "no_rebase", False) else None,
            "reset_fallback": False if getattr(args, "no_reset", False) else None,
            "capture_output": True if getattr(args, "capture", False) else None,
            "strict": True if getattr(args, "strict", False) else None,
        },
    )


def discover(root: Path, config: Config) -> list[Path]:
    """Scans ``root`` for repositories, with a spinner."""
    scanner = Scanner(config.scan)
    with console.status(f"[bold blue]Scanning {root}...", spinner="dots"):
        repos = scanner.scan(root)

    message = f"Found [bold]{len(repos)}[/bold] repositories under [cyan]{root}[/cyan]"
    if scanner.errors:
        message += f" [dim]({len(scanner.errors)} unreadable directories skipped)[/dim]"
    console.print(message)
    return repos


def list_repos(root: Path, config: Config, file_name: str | None) -> None:
    """Shows discovered repositories with their remote, or saves them to a file."""
    repos = discover(root, config)

    if file_name:
        ops.write_list(Path(file_name), repos)
        console.print(f"✔ Saved list to [cyan]{file_name}[/cyan]", style="green")
        return

    remotes = ops.collect_remotes(repos, config.sync.remote_name)

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Repository", style="cyan")
    table.add_column("Remote", style="dim")

    home = str(Path.home())
    for path in repos:
        url = remotes.get(path)
        table.add_row(
            str(path).replace(home, "~", 1),
            url if url else "[red]none[/red]",
        )

    console.print(table)


def print_report(report: SyncReport) -> None:
    """Renders the end-of-run summary, listing repositories that never recovered."""
    by_tier: dict[int, int] = {}
    for result in report.recovered:
        if result.tier is not None:
            by_tier[result.tier] = by_tier.get(result.tier, 0) + 1

    summary = Text()
    summary.append(f"In sync: {len(report.recovered)}\n", style="bold green")
    for tier in sorted(by_tier):
        summary.append(f"  via {TIER_NAMES[tier]}: {by_tier[tier]}\n", style="dim")
    failing_style = "bold red" if report.still_failing else "green"
    summary.append(f"Still failing: {len(report.still_failing)}", style=failing_style)
    console.print(Panel(summary, title="Sync Report", expand=False))

    if not report.still_failing:
        return

    table = Table(show_header=True, header_style="bold red")
    table.add_column("Repository", style="cyan")
    table.add_column("Last Error")
    for result in report.still_failing:
        error = str(result.error).splitlines()[0] if result.error else "unknown"
        table.add_row(str(result.path), error)
    console.print(table)


def sync_repos(root: Path, config: Config) -> bool:
    """Synchronizes every repository under ``root``.

    Returns:
        bool: False if the run should be reported as failed.
    """
    repos = discover(root, config)
    if not repos:
        console.print("[yellow]Nothing to sync.[/yellow]")
        return True

    report = Syncer(config.sync, CancellationController(), config.scan.marker).run(
        repos
    )
    print_report(report)
    return report.ok or not config.sync.strict


def export_repos(root: Path, config: Config, file_name: str | None) -> None:
    """Writes the path -> remote url mapping of every repository to JSON."""
    repos = discover(root, config)
    dest = ops.export_filename(file_name)
    with console.status("[bold blue]Reading remotes...", spinner="dots"):
        mapping = ops.export_mapping(root, repos, dest, config.sync.remote_name)
    console.print(
        f"✔ Exported {len(mapping)} repositories to [cyan]{dest}[/cyan]", style="green"
    )


def import_repos(root: Path, config: Config, file_name: str | None) -> bool:
    """Clones every repository listed in an exported mapping under ``root``.

    Returns:
        bool: False if any clone failed.
    """
    if not file_name:
        logger.warning("Filename not specified. Using 'export.json' as default")
    mapping = ops.load_mapping(ops.export_filename(file_name))
    failures = ops.import_mapping(
        root, mapping, timeout=config.sync.timeout or None
    )

    if failures:
        table = Table(show_header=True, header_style="bold red")
        table.add_column("Path", style="cyan")
        table.add_column("Error")
        for rel, error in sorted(failures.items()):
            table.add_row(rel, str(error).splitlines()[0])
        console.print(table)
        return False

    console.print(f"✔ Imported {len(mapping)} repositories.", style="green")
    return True


def open_config() -> None:
    """Opens the global configuration file in the system default editor."""
    if not CONFIG_FILE.exists():
        CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(CONFIG_FILE, "w") as f:
            f.write(
                "# Git Herd Configuration\n\n"
                "[scan]\n"
                "# workers = 8\n"
                '# exclude = ["node_modules"]\n\n'
                "[sync]\n"
                "# depth = 1\n"
                '# timeout = "10m"\n'
            )

    editor = os.environ.get("EDITOR")
    if not editor:
        if sys.platform == "darwin":
            editor = "open"
        else:
            editor = "nano"

    console.print(f"Opening [cyan]{CONFIG_FILE}[/cyan]...")

    try:
        subprocess.run([editor, str(CONFIG_FILE)])
    except OSError as e:
        console.print(f"[red]Could not open editor: {e}[/red]")


def show_config_reference() -> None:
    """Displays a formatted table of all available configuration options."""
    table = Table(title="Git Herd Configuration Schema", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Type", style="dim")
    table.add_column("Default", style="yellow")
    table.add_column("Description")

    # Scan Settings
    table.add_row(
        "scan", "workers", "int", "CPU count", "Directory-listing threads (0 = CPUs)."
    )
    table.add_row("", "marker", "str", '".git"', "Directory that marks a repository.")
    table.add_row(
        "",
        "follow_symlinks",
        "bool",
        "false",
        "Descend into symlinked directories (cycles are detected).",
    )
    table.add_row(
        "", "exclude", "list", "[]", "Directory name patterns never descended into."
    )

    # Sync Settings
    table.add_row(
        "sync", "remote_name", "str", '"origin"', "Remote listed and exported."
    )
    table.add_row("", "depth", "int", "1", "History depth for pulls (0 = full).")
    table.add_row(
        "",
        "timeout",
        "int | str",
        '"10m"',
        "Max run time of one git command (e.g., '90s', '10m'; 0 = none).",
    )
    table.add_row(
        "", "rebase_fallback", "bool", "true", "Retry failed pulls with a rebase."
    )
    table.add_row(
        "",
        "reset_fallback",
        "bool",
        "true",
        "Hard-reset still-failing repos to upstream and pull again. Destructive.",
    )
    table.add_row(
        "", "capture_output", "bool", "false", "Capture git output into the report."
    )
    table.add_row(
        "", "strict", "bool", "false", "Exit 1 if any repository is still failing."
    )

    # Limits Settings
    table.add_row(
        "limits",
        "max_log_size",
        "int | str",
        '"5mb"',
        "Max size for log files before rotation (e.g., '5mb', '1gb').",
    )

    console.print(table)


class HerdHelpFormatter(argparse.HelpFormatter):
    """Custom help formatter that groups the subcommands under headers."""

    def _format_action(self, action: argparse.Action) -> str:
        if isinstance(action, argparse._SubParsersAction):
            parts = []

            groups = {
                "Discovery": ["list"],
                "Synchronization": ["sync"],
                "Mapping": ["export", "import"],
                "General": ["config", "help"],
            }

            subactions = list(self._iter_indented_subactions(action))

            for group_name, commands in groups.items():
                group_actions = [a for a in subactions if a.dest in commands]
                if not group_actions:
                    continue

                parts.append(f"\n  {group_name}:\n")

                self._indent()
                for subaction in group_actions:
                    parts.append(self._format_action(subaction))
                self._dedent()

            return self._join_parts(parts)

        return super()._format_action(action)


def build_parser() -> argparse.ArgumentParser:
    """Builds the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Find every git repository under a path and keep them in sync.",
        formatter_class=HerdHelpFormatter,
    )

    # Options shared by every subcommand that walks a tree.
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "path", nargs="?", default=".", help="Root directory (default: current)"
    )
    common.add_argument(
        "-w", "--workers", type=int, help="Directory-listing threads (default: CPUs)"
    )
    common.add_argument(
        "--follow-symlinks",
        action="store_true",
        help="Descend into symlinked directories",
    )
    common.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    list_parser = subparsers.add_parser(
        "list", parents=[common], help="List git repositories and their remotes"
    )
    list_parser.add_argument("--file", "-f", help="Save the list to this file")

    sync_parser = subparsers.add_parser(
        "sync", parents=[common], help="Pull all git repositories"
    )
    sync_parser.add_argument(
        "--depth", type=int, help="History depth for pulls (0 = full, default: 1)"
    )
    sync_parser.add_argument(
        "--timeout",
        type=parse_time,
        help="Max run time per git command (e.g. '90s', '5m'; '0s' = none)",
    )
    sync_parser.add_argument(
        "--no-rebase", action="store_true", help="Skip the rebase retry"
    )
    sync_parser.add_argument(
        "--no-reset", action="store_true", help="Skip the destructive reset retry"
    )
    sync_parser.add_argument(
        "--capture", action="store_true", help="Capture git output into the report"
    )
    sync_parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit 1 if any repository is still failing",
    )

    export_parser = subparsers.add_parser(
        "export", parents=[common], help="Export repositories to a JSON file"
    )
    export_parser.add_argument(
        "--file", "-f", help="Output file (default: export.json)"
    )

    import_parser = subparsers.add_parser(
        "import", parents=[common], help="Clone repositories from a JSON file"
    )
    import_parser.add_argument(
        "--file", "-f", help="Input file (default: export.json)"
    )

    config_parser = subparsers.add_parser(
        "config", help="Open global config file or view options"
    )
    config_parser.add_argument(
        "--list",
        "-l",
        action="store_true",
        help="List all available configuration options and their descriptions",
    )

    subparsers.add_parser("help", help="Show this help message")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the Git Herd CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command in (None, "help"):
        parser.print_help()
        return
    if args.command == "config":
        if args.list:
            show_config_reference()
        else:
            open_config()
        return

    try:
        root = ops.resolve_root(args.path)
        config = load_config(root, args)
        setup_logging(args.verbose, config)

        ok = True
        if args.command == "list":
            list_repos(root, config, args.file)
        elif args.command == "sync":
            ok = sync_repos(root, config)
        elif args.command == "export":
            export_repos(root, config, args.file)
        elif args.command == "import":
            ok = import_repos(root, config, args.file)
    except FatalError as e:
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        sys.exit(1)
    except (SyncCancelled, KeyboardInterrupt):
        err_console.print("[bold yellow]Interrupted.[/bold yellow]")
        sys.exit(EXIT_CANCELLED)

    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
