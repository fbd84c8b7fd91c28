"""Interrupt handling for concurrent git work.

Worker threads report completion and the signal handler reports interrupts
through the same :class:`queue.SimpleQueue`. The main thread blocks on that
one queue, so "has an interrupt arrived?" and "is everything finished?" are
answered by a single wait and a signal can never be lost between the two.

On interrupt every tracked git process is terminated (killed if it lingers)
and :class:`~git_herd.errors.SyncCancelled` is raised in the main thread.
Work that has already been applied, such as a hard reset, is not rolled back.
"""

import logging
import queue
import signal
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from types import FrameType
from typing import Any

from .constants import APP_NAME
from .errors import SyncCancelled
from .git_wrapper import ProcessRegistry

logger = logging.getLogger(APP_NAME)

_DONE = "done"
_CANCEL = "cancel"


@dataclass(eq=False)
class Task:
    """A unit of work running on its own daemon thread.

    Attributes:
        name (str): Label used in logs and thread names.
        result (Any): The callable's return value once finished.
        error (BaseException | None): The exception it raised, if any.
        done (bool): Set once the callable has returned or raised.
    """

    name: str
    result: Any = None
    error: BaseException | None = None
    done: bool = False

    def outcome(self) -> Any:
        """Returns the result, re-raising the task's exception if it failed."""
        if self.error is not None:
            raise self.error
        return self.result


class CancellationController:
    """Runs tasks and waits for them while listening for SIGINT/SIGTERM.

    Attributes:
        registry (ProcessRegistry): Git processes to kill on cancellation.
        signals (tuple[int, ...]): The signals handled while armed.
        poll_interval (float): Upper bound on a single blocking wait.
    """

    def __init__(
        self,
        registry: ProcessRegistry | None = None,
        signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM),
        poll_interval: float = 0.5,
    ):
        self.registry = registry if registry is not None else ProcessRegistry()
        self.signals = tuple(signals)
        self.poll_interval = poll_interval
        self._events: queue.SimpleQueue[tuple[str, Any]] = queue.SimpleQueue()
        self._signum: int | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        """bool: True once an interrupt has been received."""
        return self._cancelled

    @contextmanager
    def armed(self) -> Iterator["CancellationController"]:
        """Installs the interrupt handlers for the duration of the block.

        Signal handlers can only be installed from the main thread; anywhere
        else the block runs without them.

        Yields:
            CancellationController: This controller.
        """
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread; interrupt handlers not installed.")
            yield self
            return

        previous = {sig: signal.signal(sig, self._handle) for sig in self.signals}
        try:
            yield self
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler if handler is not None else signal.SIG_DFL)

    def _handle(self, signum: int, _frame: FrameType | None) -> None:
        self.cancel(signum)

    def cancel(self, signum: int | None = None) -> None:
        """Requests cancellation. Safe to call from a signal handler or any thread."""
        self._signum = signum
        self._cancelled = True
        self._events.put((_CANCEL, signum))

    def spawn(self, name: str, fn: Callable[..., Any], *args: Any) -> Task:
        """Starts ``fn(*args)`` on a daemon thread.

        Args:
            name (str): Label for logs and the thread name.
            fn (Callable[..., Any]): The work to run.
            *args (Any): Positional arguments for ``fn``.

        Returns:
            Task: A handle to wait on with :meth:`wait_for`.
        """
        task = Task(name)

        def target() -> None:
            try:
                task.result = fn(*args)
            except BaseException as e:
                task.error = e
            finally:
                task.done = True
                self._events.put((_DONE, task))

        threading.Thread(target=target, name=f"herd-{name}", daemon=True).start()
        return task

    def wait_for(self, tasks: Iterable[Task]) -> None:
        """Blocks until every task has finished or an interrupt arrives.

        Args:
            tasks (Iterable[Task]): Tasks started with :meth:`spawn`.

        Raises:
            SyncCancelled: If an interrupt is received first.
        """
        self.check()

        remaining = {t for t in tasks if not t.done}
        while remaining:
            # Bounded so pending signal handlers always get a chance to run.
            try:
                kind, value = self._events.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            if kind == _CANCEL:
                self._abort(value)
            remaining.discard(value)

    def call(self, name: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Runs a single task to completion, interruptibly.

        Returns:
            Any: The value returned by ``fn``.

        Raises:
            SyncCancelled: If an interrupt is received first.
            Exception: Whatever ``fn`` raised.
        """
        task = self.spawn(name, fn, *args)
        self.wait_for([task])
        return task.outcome()

    def check(self) -> None:
        """Raises if an interrupt arrived while no wait was in progress.

        Raises:
            SyncCancelled: If the controller has been cancelled.
        """
        if self._cancelled:
            self._abort(self._signum)

    def _abort(self, signum: int | None) -> None:
        logger.warning("Received interrupt signal, terminating...")
        killed = self.registry.kill_all()
        if killed:
            logger.warning(f"Terminated {killed} running git process(es).")
        raise SyncCancelled(signum)
