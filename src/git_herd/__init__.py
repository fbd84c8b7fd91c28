"""Git Herd: keep every git repository under a directory in sync.

This package provides the command-line interface, the concurrent repository
scanner, and the parallel synchronizer with its escalating recovery tiers.
"""

from . import (
    cancel,
    cli,
    config,
    constants,
    errors,
    git_wrapper,
    ops,
    scanner,
    syncer,
)

__all__ = [
    "cancel",
    "cli",
    "config",
    "constants",
    "errors",
    "git_wrapper",
    "ops",
    "scanner",
    "syncer",
]
