import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from .constants import APP_NAME, KILL_GRACE_SECONDS, MARKER_DIR, RESET_TARGET
from .errors import SyncCancelled, SyncError

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class CommandResult:
    """The observable outcome of a finished git process.

    Attributes:
        args (list[str]): The git arguments (without the leading ``git``).
        returncode (int): The process exit status.
        stdout (str): Captured standard output, empty when output was inherited.
        stderr (str): Captured standard error, empty when output was inherited.
    """

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""


class ProcessRegistry:
    """Tracks live git processes so they can be killed on cancellation.

    Spawning and closing share one lock: once :meth:`kill_all` has run, no
    further process can be started through the registry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._procs: set[subprocess.Popen] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        """bool: True once the registry has been shut down."""
        return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._procs)

    def spawn(self, cmd: list[str], **kwargs: object) -> subprocess.Popen:
        """Starts a process and begins tracking it.

        Args:
            cmd (list[str]): The full command line.
            **kwargs: Extra keyword arguments for ``subprocess.Popen``.

        Returns:
            subprocess.Popen: The running process.

        Raises:
            SyncCancelled: If the registry was already shut down.
            OSError: If the executable could not be started.
        """
        with self._lock:
            if self._closed:
                raise SyncCancelled()
            proc = subprocess.Popen(cmd, **kwargs)  # type: ignore[call-overload]
            self._procs.add(proc)
            return proc

    def discard(self, proc: subprocess.Popen) -> None:
        """Stops tracking a process that has finished."""
        with self._lock:
            self._procs.discard(proc)

    def kill_all(self, grace: float = KILL_GRACE_SECONDS) -> int:
        """Terminates every tracked process and refuses new ones.

        Processes are sent SIGTERM first and SIGKILL if they are still alive
        ``grace`` seconds after the batch was signalled.

        Args:
            grace (float, optional): Seconds to wait between terminate and kill.

        Returns:
            int: The number of processes that were signalled.
        """
        with self._lock:
            self._closed = True
            procs = list(self._procs)

        for proc in procs:
            try:
                proc.terminate()
            except OSError as e:
                logger.debug(f"terminate failed for pid {proc.pid}: {e}")

        # One grace period for the whole batch, not one per process.
        deadline = time.monotonic() + grace
        for proc in procs:
            try:
                proc.wait(timeout=max(deadline - time.monotonic(), 0))
            except subprocess.TimeoutExpired:
                logger.warning(f"git (pid {proc.pid}) ignored SIGTERM, killing.")
                proc.kill()
                proc.wait()

        return len(procs)


def run_git(
    args: list[str],
    cwd: Path | None = None,
    *,
    capture: bool = False,
    timeout: float | None = None,
    registry: ProcessRegistry | None = None,
    subject: Path | None = None,
) -> CommandResult:
    """Executes a single git command and waits for it to finish.

    This is the only place Git Herd starts an external process; every
    synchronization tier, the remote lookup and cloning go through it.

    Args:
        args (list[str]): Arguments passed to git.
        cwd (Path | None, optional): Repository to run in (``git -C``).
        capture (bool, optional): Capture stdout/stderr instead of inheriting
            the parent's streams. Defaults to False.
        timeout (float | None, optional): Seconds before the process is killed.
            None or 0 waits indefinitely.
        registry (ProcessRegistry | None, optional): Registry that tracks the
            process for cancellation.
        subject (Path | None, optional): Path named in errors when ``cwd`` is
            not set (e.g. a clone target).

    Returns:
        CommandResult: The exit status and any captured output.

    Raises:
        SyncError: If git cannot be started, times out or exits non-zero.
        SyncCancelled: If the registry was shut down before the spawn.
    """
    if registry is None:
        registry = ProcessRegistry()
    cmd = ["git", *args] if cwd is None else ["git", "-C", str(cwd), *args]
    where = cwd or subject or Path(".")
    stream = subprocess.PIPE if capture else None

    try:
        proc = registry.spawn(cmd, stdout=stream, stderr=stream, text=True)
    except OSError as e:
        raise SyncError(where, args, f"could not start git: {e}") from e

    try:
        stdout, stderr = proc.communicate(timeout=timeout or None)
    except subprocess.TimeoutExpired as e:
        proc.kill()
        proc.communicate()
        raise SyncError(where, args, f"timed out after {timeout}s") from e
    finally:
        registry.discard(proc)

    result = CommandResult(args, proc.returncode, stdout or "", stderr or "")
    if proc.returncode != 0:
        if proc.returncode < 0 and registry.closed:
            raise SyncCancelled()
        raise SyncError(
            where,
            args,
            f"exit status {proc.returncode}",
            returncode=proc.returncode,
            output=result.stderr or result.stdout,
        )
    return result


class GitRepo:
    """A wrapper around the Git command-line interface for a specific repository.

    Every method funnels through :meth:`run`, so the timeout and cancellation
    behaviour is identical for all synchronization commands.

    Attributes:
        path (Path): The file system path to the repository root.
        timeout (float | None): Default per-command timeout in seconds.
        capture (bool): Whether command output is captured by default.
    """

    def __init__(
        self,
        path: Path,
        registry: ProcessRegistry | None = None,
        timeout: float | None = None,
        capture: bool = False,
        marker: str = MARKER_DIR,
    ):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            registry (ProcessRegistry | None, optional): Process tracker shared
                with the cancellation controller.
            timeout (float | None, optional): Per-command timeout in seconds.
            capture (bool, optional): Capture output instead of streaming it.
            marker (str, optional): The marker directory name.

        Raises:
            ValueError: If the specified path does not contain the marker directory.
        """
        self.path = path
        if not (self.path / marker).exists():
            raise ValueError(f"Not a git repository: {self.path}")
        self.registry = registry if registry is not None else ProcessRegistry()
        self.timeout = timeout
        self.capture = capture

    def __repr__(self) -> str:
        return f"GitRepo({str(self.path)!r})"

    def run(self, args: list[str], capture: bool | None = None) -> CommandResult:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            capture (bool | None, optional): Overrides the instance default.

        Returns:
            CommandResult: The finished command.

        Raises:
            SyncError: If the git command fails, cannot start, or times out.
        """
        return run_git(
            args,
            self.path,
            capture=self.capture if capture is None else capture,
            timeout=self.timeout,
            registry=self.registry,
        )

    def pull(self, depth: int = 0) -> CommandResult:
        """Fetches and integrates the upstream branch.

        Args:
            depth (int, optional): Limit fetched history to this many commits.
                0 fetches full history.
        """
        cmd = ["pull"]
        if depth > 0:
            cmd.append(f"--depth={depth}")
        return self.run(cmd)

    def pull_rebase(self, depth: int = 1) -> CommandResult:
        """Fetches the upstream branch and rebases local work onto it.

        History is always bounded; a depth below 1 is raised to 1.
        """
        return self.run(["pull", "--rebase", f"--depth={max(depth, 1)}"])

    def reset_hard(self, target: str = RESET_TARGET) -> CommandResult:
        """Discards local commits and changes, matching ``target`` exactly.

        This is destructive: uncommitted work in the tree is lost.

        Args:
            target (str, optional): The revision to reset to. Defaults to the
                branch's upstream.
        """
        return self.run(["reset", "--hard", target])

    def remote_url(self, remote: str) -> str:
        """Reads the configured URL of a remote.

        Args:
            remote (str): The remote name (e.g., 'origin').

        Returns:
            str: The remote URL.

        Raises:
            SyncError: If the remote is not configured.
        """
        result = self.run(["config", "--get", f"remote.{remote}.url"], capture=True)
        return result.stdout.strip()


def clone(
    url: str,
    dest: Path,
    *,
    registry: ProcessRegistry | None = None,
    timeout: float | None = None,
    capture: bool = False,
) -> CommandResult:
    """Clones ``url`` into ``dest``.

    Args:
        url (str): The remote URL.
        dest (Path): The target directory; must be absent or empty.
        registry (ProcessRegistry | None, optional): Process tracker.
        timeout (float | None, optional): Seconds before the clone is killed.
        capture (bool, optional): Capture output instead of streaming it.
    """
    return run_git(
        ["clone", url, str(dest)],
        capture=capture,
        timeout=timeout,
        registry=registry,
        subject=dest,
    )
