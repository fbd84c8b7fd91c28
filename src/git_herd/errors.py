"""Exception hierarchy for Git Herd.

Errors fall into three families that differ in how far they propagate:

* ``ScanError`` is contained by the scanner at the level of a single
  directory; the directory becomes a leaf and the scan carries on.
* ``SyncError`` is contained by the syncer's failure record and drives
  escalation to the next recovery tier.
* ``FatalError`` aborts the command before any concurrent work starts.
"""

from pathlib import Path


class HerdError(Exception):
    """Base class for all Git Herd errors."""


class FatalError(HerdError):
    """An unrecoverable problem detected before work was started."""


class ScanError(HerdError):
    """A directory could not be listed during a scan.

    Attributes:
        path (Path): The directory that could not be read.
    """

    def __init__(self, path: Path, reason: object):
        super().__init__(f"Cannot read {path}: {reason}")
        self.path = path


class SyncError(HerdError):
    """A git command failed to run or exited with a non-zero status.

    Attributes:
        path (Path): The repository the command ran in.
        command (list[str]): The git arguments that were executed.
        returncode (int | None): Exit status, or None if the process never
            completed (spawn failure, timeout or cancellation).
        output (str): Captured stderr/stdout, empty when output was inherited.
    """

    def __init__(
        self,
        path: Path,
        command: list[str],
        reason: str,
        returncode: int | None = None,
        output: str = "",
    ):
        message = f"git {' '.join(command)} failed in {path}: {reason}"
        if output:
            message = f"{message}\n{output.strip()}"
        super().__init__(message)
        self.path = path
        self.command = command
        self.returncode = returncode
        self.output = output


class SyncCancelled(HerdError):
    """The run was interrupted by a signal before all work finished.

    Attributes:
        signum (int | None): The signal that triggered the cancellation.
    """

    def __init__(self, signum: int | None = None):
        super().__init__(f"Cancelled by signal {signum}" if signum else "Cancelled")
        self.signum = signum
