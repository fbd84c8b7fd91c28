"""Concurrent discovery of repository roots beneath a directory.

The scan is a fork-join over a fixed-size thread pool. Each submitted task
lists one directory and reports either "this is a repository root" or the
subdirectories to inspect next. The coordinating thread owns the set of
outstanding tasks: it submits children in the same step that retires their
parent, so the set cannot become empty while work that has been produced is
still waiting to run, and the scan ends exactly when it is empty.

Descent stops at the first directory holding the marker, which keeps large
object stores out of the walk and prevents nested or vendored repositories
from being reported as independent roots.

Symlinked directories are not followed unless ``follow_symlinks`` is set.
When they are, real paths are remembered so that link cycles terminate.
"""

import fnmatch
import logging
import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from .config import ScanConfig
from .constants import APP_NAME
from .errors import ScanError

logger = logging.getLogger(APP_NAME)


@dataclass
class Listing:
    """The result of inspecting a single directory.

    Attributes:
        path (Path): The inspected directory.
        is_root (bool): True if the directory holds the marker.
        children (list[tuple[Path, str]]): Subdirectories to inspect, each
            paired with the key used for cycle detection.
        error (ScanError | None): Set when the directory could not be listed.
    """

    path: Path
    is_root: bool = False
    children: list[tuple[Path, str]] = field(default_factory=list)
    error: ScanError | None = None


class Scanner:
    """Finds every repository root reachable from a starting directory.

    Attributes:
        config (ScanConfig): Worker count, marker name and traversal policy.
        errors (list[ScanError]): Directories skipped during the last scan.
    """

    def __init__(self, config: ScanConfig | None = None):
        self.config = config or ScanConfig()
        self.errors: list[ScanError] = []
        self._outstanding: set[Future[Listing]] = set()

    @property
    def outstanding(self) -> int:
        """int: Number of directory jobs submitted but not yet retired."""
        return len(self._outstanding)

    def scan(self, root: Path) -> list[Path]:
        """Walks ``root`` and returns the repository roots beneath it.

        Args:
            root (Path): The directory to start from. It may itself be a
                repository root, in which case it is the only result.

        Returns:
            list[Path]: Repository roots, sorted.
        """
        root = Path(os.path.abspath(root))
        found: list[Path] = []
        follow = self.config.follow_symlinks
        visited = {os.path.realpath(root)}
        self.errors = []

        with ThreadPoolExecutor(
            max_workers=self.config.workers, thread_name_prefix="herd-scan"
        ) as pool:
            self._outstanding = {pool.submit(self.inspect, root)}

            try:
                while self._outstanding:
                    done, self._outstanding = wait(
                        self._outstanding, return_when=FIRST_COMPLETED
                    )
                    for future in done:
                        listing = future.result()

                        if listing.error:
                            self.errors.append(listing.error)
                            continue
                        if listing.is_root:
                            found.append(listing.path)
                            continue

                        for child, key in listing.children:
                            if follow:
                                if key in visited:
                                    logger.debug(f"SCAN: {child} already visited.")
                                    continue
                                visited.add(key)
                            self._outstanding.add(pool.submit(self.inspect, child))
            except BaseException:
                # Interrupted: drop queued listings instead of draining them.
                pool.shutdown(wait=False, cancel_futures=True)
                self._outstanding = set()
                raise

        if self.errors:
            logger.info(f"SCAN: {len(self.errors)} unreadable directories skipped.")
        logger.debug(f"SCAN: {len(found)} repositories under {root}.")
        return sorted(found)

    def inspect(self, path: Path) -> Listing:
        """Lists one directory and classifies it.

        Never raises for filesystem problems: an unreadable directory comes
        back as a leaf carrying a :class:`ScanError`.

        Args:
            path (Path): The directory to inspect.

        Returns:
            Listing: Either a repository root, or the subdirectories to visit.
        """
        follow = self.config.follow_symlinks
        subdirs: list[os.DirEntry[str]] = []

        try:
            with os.scandir(path) as it:
                for entry in it:
                    try:
                        if not entry.is_dir(follow_symlinks=follow):
                            continue
                        if entry.name == self.config.marker:
                            return Listing(path, is_root=True)
                        if not self._excluded(entry.name):
                            subdirs.append(entry)
                    except OSError as e:
                        logger.debug(f"SCAN: cannot stat {entry.path}: {e}")
        except OSError as e:
            error = ScanError(path, e)
            logger.debug(str(error))
            return Listing(path, error=error)

        children = []
        for entry in subdirs:
            child = Path(entry.path)
            # Without symlinks the walk is a tree and needs no cycle check.
            key = os.path.realpath(child) if follow else entry.path
            children.append((child, key))
        return Listing(path, children=children)

    def _excluded(self, name: str) -> bool:
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.config.exclude)


def find_repos(root: Path, config: ScanConfig | None = None) -> list[Path]:
    """Convenience wrapper: scans ``root`` with a fresh :class:`Scanner`."""
    return Scanner(config).scan(root)
