import os
from pathlib import Path

"""Global constants and configuration path definitions for Git Herd.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, and the default git behaviour used across the application.
"""

# --- Identity ---
APP_NAME = "git-herd"
"""str: The human-readable application name."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-herd"
"""Path: The directory for runtime state data (logs)."""

LOG_FILE = STATE_DIR / "herd.log"
"""Path: The file path for the application log."""

# --- Configuration Paths ---
_XDG_CONFIG = os.environ.get("XDG_CONFIG_HOME")
_BASE_CONFIG = Path(_XDG_CONFIG) if _XDG_CONFIG else Path.home() / ".config"

CONFIG_DIR: Path = _BASE_CONFIG / "git-herd"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

LOCAL_CONFIG_NAME = "herd.toml"
"""str: Per-tree configuration file looked up in the scanned root."""

# --- Git / Logic Constants ---
MARKER_DIR = ".git"
"""str: The directory entry that identifies a repository root."""

DEFAULT_REMOTE = "origin"
"""str: The remote whose URL is listed and exported."""

DEFAULT_DEPTH = 1
"""int: History depth used for shallow pulls (0 disables --depth)."""

RESET_TARGET = "@{upstream}"
"""str: The revision a diverged working tree is hard-reset to."""

DEFAULT_EXPORT_FILE = "export.json"
"""str: File name used by export/import when none is given."""

KILL_GRACE_SECONDS = 3.0
"""float: Time a terminated git process gets before it is killed outright."""

EXIT_CANCELLED = 130
"""int: Process exit status after an interrupt (128 + SIGINT)."""
