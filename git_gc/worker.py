"""Worker that runs ``git gc`` against a single repository."""

import enum
import logging
import os
import signal
import subprocess
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

WorkItem = str


class WorkerError(Exception):
    """Raised when a unit of work does not complete successfully."""


class DispatchFailure(WorkerError):
    """The external command could not be started at all."""


class UnitFailure(WorkerError):
    """The external command ran and exited with a non-zero status."""

    def __init__(self, item: WorkItem, returncode: int):
        super().__init__(f"git gc exited with code {returncode}")
        self.item = item
        self.returncode = returncode


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class CompletionEvent:
    item: WorkItem
    outcome: Outcome
    returncode: int | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0


class GitGcRunner:
    """Run ``git -C <repo> gc`` with all output discarded.

    ``run`` blocks the calling thread until git exits and never raises for a
    per-repository problem: both a non-zero exit status and a failure to start
    the process are reported as a failed :class:`CompletionEvent`.

    Running children are tracked so :meth:`terminate_all` can stop them when a
    run is abandoned or force-quit.
    """

    def __init__(
        self,
        git: str = "git",
        gc_args: Sequence[str] = (),
        detach: bool = False,
    ):
        self.git = git
        self.gc_args = list(gc_args)
        self.detach = detach
        self._procs: set[subprocess.Popen] = set()
        self._lock = threading.Lock()
        self._stopped = False

    def command(self, item: WorkItem) -> list[str]:
        return [self.git, "-C", item, "gc", *self.gc_args]

    def run(self, item: WorkItem) -> CompletionEvent:
        started_at = datetime.now(timezone.utc)
        logger.debug("Running git gc in %s", item)
        try:
            self._invoke(item)
        except UnitFailure as e:
            logger.info("git gc failed in %s: %s", item, e)
            return CompletionEvent(
                item=item,
                outcome=Outcome.FAILURE,
                returncode=e.returncode,
                error=str(e),
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
            )
        except WorkerError as e:
            logger.info("Could not start git gc in %s: %s", item, e)
            return CompletionEvent(
                item=item,
                outcome=Outcome.FAILURE,
                error=str(e),
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
            )

        logger.debug("git gc finished in %s", item)
        return CompletionEvent(
            item=item,
            outcome=Outcome.SUCCESS,
            returncode=0,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

    def _invoke(self, item: WorkItem) -> None:
        cmd = self.command(item)
        with self._lock:
            if self._stopped:
                raise DispatchFailure("runner stopped before git gc could start")
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=self.detach,
                )
            except OSError as e:
                raise DispatchFailure(f"could not run {cmd[0]!r}: {e}") from e
            self._procs.add(proc)

        try:
            returncode = proc.wait()
        finally:
            with self._lock:
                self._procs.discard(proc)
        if returncode != 0:
            raise UnitFailure(item, returncode)

    def terminate_all(self) -> int:
        """Send SIGTERM to every running git gc and refuse to start new ones.

        Detached children lead their own session, so the whole process group
        is signalled to reach the ``git repack`` helpers too. Returns the
        number of processes signalled.
        """
        with self._lock:
            self._stopped = True
            procs = [p for p in self._procs if p.poll() is None]

        for proc in procs:
            logger.info("Terminating git gc (pid %d)", proc.pid)
            try:
                if self.detach and hasattr(os, "killpg"):
                    os.killpg(proc.pid, signal.SIGTERM)
                else:
                    proc.terminate()
            except ProcessLookupError:
                logger.debug("git gc (pid %d) already exited", proc.pid)
        return len(procs)
