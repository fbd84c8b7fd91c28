"""Parallel synchronization with escalating recovery.

Every repository first gets a plain pull, all of them at once. Repositories
that fail move on to progressively more invasive strategies, one repository
at a time, and only as far as they need to go:

========  ==========================================  ===========
Tier      Action                                      Execution
========  ==========================================  ===========
0         ``git pull [--depth=N]``                    concurrent
1         ``git pull --rebase --depth=N``             sequential
2         ``git reset --hard @{upstream}`` + tier 0   sequential
========  ==========================================  ===========

Tier 2 throws away local commits and uncommitted changes.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from .cancel import CancellationController
from .config import SyncConfig
from .constants import APP_NAME, MARKER_DIR
from .errors import HerdError, SyncCancelled, SyncError
from .git_wrapper import GitRepo

logger = logging.getLogger(APP_NAME)

TIER_PULL = 0
TIER_REBASE = 1
TIER_RESET = 2

TIER_NAMES = {
    TIER_PULL: "pull",
    TIER_REBASE: "pull --rebase",
    TIER_RESET: "reset --hard + pull",
}


class Outcome(StrEnum):
    """Final state of a repository after all applicable tiers ran."""

    RECOVERED = "recovered"
    STILL_FAILING = "still_failing"


@dataclass(frozen=True)
class RepoResult:
    """Per-repository entry of a :class:`SyncReport`.

    Attributes:
        path (Path): The repository root.
        outcome (Outcome): Whether the repository ended up in sync.
        tier (int | None): The tier that succeeded, None if none did.
        error (HerdError | None): The last error seen, None when recovered.
    """

    path: Path
    outcome: Outcome
    tier: int | None = None
    error: HerdError | None = None


@dataclass
class SyncReport:
    """Outcome of a sync run, keyed by repository path."""

    results: dict[Path, RepoResult] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, path: Path) -> RepoResult:
        return self.results[path]

    @property
    def recovered(self) -> list[RepoResult]:
        return [r for r in self._sorted() if r.outcome is Outcome.RECOVERED]

    @property
    def still_failing(self) -> list[RepoResult]:
        return [r for r in self._sorted() if r.outcome is Outcome.STILL_FAILING]

    @property
    def ok(self) -> bool:
        """bool: True when no repository is still failing."""
        return not self.still_failing

    def _sorted(self) -> list[RepoResult]:
        return [self.results[p] for p in sorted(self.results)]


class Syncer:
    """Brings a set of repositories in line with their remotes.

    Attributes:
        config (SyncConfig): Depth, timeout and tier switches.
        controller (CancellationController): Runs the work and handles interrupts.
        failures (dict[Path, HerdError]): The failure record: latest error for
            each repository that has not recovered yet.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        controller: CancellationController | None = None,
        marker: str = MARKER_DIR,
    ):
        self.config = config or SyncConfig()
        self.controller = controller or CancellationController()
        self.marker = marker
        self.failures: dict[Path, HerdError] = {}
        self._recovered: dict[Path, int] = {}
        self._lock = threading.Lock()

    def run(self, repos: Iterable[Path]) -> SyncReport:
        """Synchronizes every repository, escalating through the tiers.

        Args:
            repos (Iterable[Path]): Repository roots to synchronize.

        Returns:
            SyncReport: The outcome for every repository.

        Raises:
            SyncCancelled: If the run was interrupted.
        """
        paths = sorted(set(repos))
        self.failures = {}
        self._recovered = {}

        with self.controller.armed():
            self._initial(paths)
            if self.config.rebase_fallback:
                self._escalate(TIER_REBASE, self._pull_rebase)
            if self.config.reset_fallback:
                self._escalate(TIER_RESET, self._reset_and_pull)
            self.controller.check()

        report = self._report(paths)
        logger.info(
            f"SYNC: {len(report.recovered)} in sync, "
            f"{len(report.still_failing)} still failing."
        )
        return report

    def _initial(self, paths: list[Path]) -> None:
        """Tier 0: one concurrent pull per repository."""
        tasks = [
            self.controller.spawn(f"pull-{path.name}", self._attempt, TIER_PULL, path)
            for path in paths
        ]
        self.controller.wait_for(tasks)

    def _attempt(self, tier: int, path: Path) -> None:
        try:
            self._pull(path)
        except SyncCancelled:
            raise
        except Exception as e:
            error = self._as_herd_error(path, e)
            logger.error(f"PULL ERROR {path}: {error}")
            with self._lock:
                self.failures[path] = error
        else:
            logger.info(f"PULLED {path}")
            with self._lock:
                self._recovered[path] = tier

    def _escalate(self, tier: int, action: Callable[[Path], object]) -> None:
        """Runs ``action`` for each failing repository, one at a time."""
        with self._lock:
            candidates = sorted(self.failures)

        for path in candidates:
            with self._lock:
                previous = self.failures[path]
            logger.info(
                f"RETRY {path}: trying {TIER_NAMES[tier]} after error: {previous}"
            )
            try:
                self.controller.call(f"tier{tier}-{path.name}", action, path)
            except SyncCancelled:
                raise
            except Exception as e:
                error = self._as_herd_error(path, e)
                logger.error(f"RETRY ERROR {path} ({TIER_NAMES[tier]}): {error}")
                with self._lock:
                    self.failures[path] = error
            else:
                logger.info(f"RECOVERED {path} with {TIER_NAMES[tier]}")
                with self._lock:
                    del self.failures[path]
                    self._recovered[path] = tier

    def _open(self, path: Path) -> GitRepo:
        try:
            return GitRepo(
                path,
                registry=self.controller.registry,
                timeout=self.config.timeout or None,
                capture=self.config.capture_output,
                marker=self.marker,
            )
        except ValueError as e:
            raise SyncError(path, [], str(e)) from e

    def _pull(self, path: Path) -> None:
        self._open(path).pull(depth=self.config.depth)

    def _pull_rebase(self, path: Path) -> None:
        self._open(path).pull_rebase(depth=self.config.depth)

    def _reset_and_pull(self, path: Path) -> None:
        repo = self._open(path)
        logger.warning(f"RESET {path}: discarding local changes.")
        repo.reset_hard()
        repo.pull(depth=self.config.depth)

    @staticmethod
    def _as_herd_error(path: Path, error: Exception) -> HerdError:
        if isinstance(error, HerdError):
            return error
        return SyncError(path, [], f"{type(error).__name__}: {error}")

    def _report(self, paths: list[Path]) -> SyncReport:
        report = SyncReport()
        with self._lock:
            for path in paths:
                if path in self._recovered:
                    report.results[path] = RepoResult(
                        path, Outcome.RECOVERED, tier=self._recovered[path]
                    )
                else:
                    report.results[path] = RepoResult(
                        path, Outcome.STILL_FAILING, error=self.failures.get(path)
                    )
        return report

