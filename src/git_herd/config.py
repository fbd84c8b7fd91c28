import logging
import os
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, ClassVar

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_DEPTH,
    DEFAULT_REMOTE,
    LOCAL_CONFIG_NAME,
    MARKER_DIR,
)

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '1hr', '30m') to seconds."""
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


def parse_workers(value: int | str) -> int:
    """Validates a worker count; 0 selects one worker per CPU."""
    workers = int(value)
    if workers < 0:
        raise ValueError(f"Invalid worker count '{value}'")
    return workers or (os.cpu_count() or 1)


@dataclass(frozen=True)
class ScanConfig:
    """Repository discovery settings.

    Attributes:
        workers (int): Size of the directory-listing worker pool.
        marker (str): Directory name that marks a repository root.
        follow_symlinks (bool): Whether symlinked directories are descended into.
        exclude (tuple[str, ...]): Directory name patterns never descended into.
    """

    workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    marker: str = MARKER_DIR
    follow_symlinks: bool = False
    exclude: tuple[str, ...] = ()


@dataclass(frozen=True)
class SyncConfig:
    """Synchronization settings.

    Attributes:
        remote_name (str): The remote listed and exported for each repository.
        depth (int): History depth for pulls (0 pulls full history).
        timeout (int): Seconds a single git command may run (0 disables).
        rebase_fallback (bool): Whether failed pulls are retried with a rebase.
        reset_fallback (bool): Whether still-failing repositories are hard-reset
            to their upstream and pulled again.
        capture_output (bool): Capture git output instead of streaming it.
        strict (bool): Exit non-zero when any repository could not be synced.
    """

    remote_name: str = DEFAULT_REMOTE
    depth: int = DEFAULT_DEPTH
    timeout: int = 600
    rebase_fallback: bool = True
    reset_fallback: bool = True
    capture_output: bool = False
    strict: bool = False


@dataclass(frozen=True)
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        scan (ScanConfig): Discovery settings.
        sync (SyncConfig): Synchronization settings.
        limits (LimitsConfig): Resource limits.
    """

    scan: ScanConfig = field(default_factory=ScanConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    # Cache for the base global configuration
    _global_cache: ClassVar["Config | None"] = None

    @classmethod
    def load(cls, root: Path | None = None) -> "Config":
        """Loads and merges configuration from defaults, global, and local sources.

        Args:
            root (Path | None): The scanned root to search for local config.

        Returns:
            Config: The fully merged configuration object.
        """
        # 1. Load or Retrieve Global Config
        if cls._global_cache is None:
            instance = cls()
            if CONFIG_FILE.exists():
                instance._merge_from_file(CONFIG_FILE)
            cls._global_cache = instance

        # Sections are frozen, so a shallow copy is independent of the cache.
        instance = replace(cls._global_cache)

        # 2. Load Local Config (if applicable)
        if root:
            local_toml = root / LOCAL_CONFIG_NAME
            pyproject = root / "pyproject.toml"

            if local_toml.exists():
                instance._merge_from_file(local_toml)
            elif pyproject.exists():
                instance._merge_from_file(pyproject, section="tool.herd")

        return instance

    def with_overrides(self, **sections: dict[str, Any]) -> "Config":
        """Returns a copy with command-line values layered on top.

        Keys whose value is None are treated as "not given" and skipped.

        Args:
            **sections (dict[str, Any]): Per-section updates, e.g.
                ``sync={"depth": 0}``.

        Returns:
            Config: A new configuration object.
        """
        updated = replace(self)
        for name, updates in sections.items():
            given = {k: v for k, v in updates.items() if v is not None}
            if given:
                current = getattr(updated, name)
                setattr(updated, name, self._update_dataclass(name, current, given))
        return updated

    def _merge_from_file(self, path: Path, section: str | None = None) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
            section (str | None): Dot-separated section path (e.g., 'tool.herd').
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if section:
                for key in section.split("."):
                    data = data.get(key, {})

            if not data:
                return

            if "limits" in data:
                self.limits = self._update_dataclass(
                    "limits", self.limits, data["limits"]
                )
            if "sync" in data:
                self.sync = self._update_dataclass("sync", self.sync, data["sync"])
            if "scan" in data:
                # Exclusions accumulate across layers instead of replacing.
                scan_data = dict(data["scan"])
                new_excludes = scan_data.pop("exclude", [])
                self.scan = self._update_dataclass("scan", self.scan, scan_data)
                if new_excludes:
                    merged = dict.fromkeys([*self.scan.exclude, *new_excludes])
                    self.scan = replace(self.scan, exclude=tuple(merged))

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except Exception as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        # 1. Catch and warn about typos / unknown keys
        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        # 2. Process valid keys
        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                # Route specific keys through our parsers
                if k == "max_log_size":
                    filtered_updates[k] = parse_size(v)
                elif k == "timeout":
                    filtered_updates[k] = parse_time(v)
                elif k == "workers":
                    filtered_updates[k] = parse_workers(v)
                elif k == "depth":
                    depth = int(v)
                    if depth < 0:
                        raise ValueError(f"Invalid depth '{v}'")
                    filtered_updates[k] = depth
                elif k == "exclude":
                    filtered_updates[k] = tuple(v)
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)
