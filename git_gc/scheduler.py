"""Scheduler: run a unit of work on every item with bounded concurrency."""

from __future__ import annotations

import asyncio
import enum
import logging
import traceback
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from git_gc.worker import CompletionEvent, Outcome, WorkItem

if TYPE_CHECKING:
    from git_gc.progress import ProgressReporter

log = logging.getLogger(__name__)

RunFn = Callable[[WorkItem], CompletionEvent]


class SchedulerError(Exception):
    """Raised when the scheduler is driven out of protocol."""


class Phase(str, enum.Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    DRAINING = "draining"
    DONE = "done"
    CANCELLED = "cancelled"


class CancelPolicy(str, enum.Enum):
    ABANDON = "abandon"  # stop immediately, leave in-flight units behind
    DRAIN = "drain"  # stop dispatching, wait for in-flight units


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class SchedulerState:
    """Dispatch bookkeeping for one run.

    Pure and synchronous: it decides what to dispatch next but never runs
    anything itself. Only the control loop in :class:`Scheduler` mutates it.
    """

    def __init__(self, items: Sequence[WorkItem], concurrency_limit: int):
        if concurrency_limit < 1:
            raise ValueError(f"concurrency limit must be >= 1, got {concurrency_limit}")
        if len(set(items)) != len(items):
            raise ValueError("work items must be unique")

        self.items: list[WorkItem] = list(items)
        self.concurrency_limit = concurrency_limit

        self.next_index = 0
        self.in_flight = 0
        self.completed = 0
        self.failed = 0
        self.phase = Phase.INITIALIZING
        self.cancel_requested = False
        self.outstanding: set[WorkItem] = set()  # dispatched, not yet completed
        self.max_in_flight = 0

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def done(self) -> bool:
        return self.phase in (Phase.DONE, Phase.CANCELLED)

    @property
    def dispatched(self) -> list[WorkItem]:
        return self.items[: self.next_index]

    @property
    def fraction(self) -> float:
        if self.total == 0:
            return 1.0
        return self.completed / self.total

    def start(self) -> list[WorkItem]:
        """Leave INITIALIZING and return the first batch to dispatch."""
        if self.phase is not Phase.INITIALIZING:
            raise SchedulerError(f"start() called in phase {self.phase.value}")

        if self.total == 0:
            self.phase = Phase.DONE
            return []

        self.phase = Phase.RUNNING
        batch = [self._dispatch_next() for _ in range(min(self.concurrency_limit, self.total))]
        self._settle_phase()
        return batch

    def complete(self, event: CompletionEvent) -> WorkItem | None:
        """Record *event* and return the next item to dispatch, if any."""
        if self.done:
            raise SchedulerError(f"completion for {event.item} after the run ended")
        if event.item not in self.outstanding:
            raise SchedulerError(f"completion for {event.item}, which is not in flight")

        self.outstanding.remove(event.item)
        self.in_flight -= 1
        self.completed += 1
        if event.outcome is Outcome.FAILURE:
            self.failed += 1

        if self.completed == self.total:
            self.phase = Phase.DONE
            return None

        if self.cancel_requested:
            if self.in_flight == 0:
                self.phase = Phase.CANCELLED
            return None

        next_item = None
        if self.next_index < self.total:
            next_item = self._dispatch_next()
        self._settle_phase()
        return next_item

    def cancel(self, policy: CancelPolicy = CancelPolicy.ABANDON) -> None:
        """Stop dispatching. No-op once the run has ended."""
        if self.done:
            return
        self.cancel_requested = True
        if policy is CancelPolicy.ABANDON or self.in_flight == 0:
            self.phase = Phase.CANCELLED
        else:
            self.phase = Phase.DRAINING

    def _dispatch_next(self) -> WorkItem:
        item = self.items[self.next_index]
        self.next_index += 1
        self.in_flight += 1
        self.outstanding.add(item)
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        return item

    def _settle_phase(self) -> None:
        if self.next_index == self.total and self.in_flight > 0:
            self.phase = Phase.DRAINING
        else:
            self.phase = Phase.RUNNING

    def status_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "total": self.total,
            "dispatched": self.next_index,
            "in_flight": self.in_flight,
            "completed": self.completed,
            "failed": self.failed,
            "cancel_requested": self.cancel_requested,
        }


# ---------------------------------------------------------------------------
# Control loop
# ---------------------------------------------------------------------------

class Scheduler:
    """Drive a :class:`SchedulerState` to completion with real concurrency.

    Each dispatched item runs on an executor thread via ``run_in_executor``;
    the asyncio loop that awaits them is the only writer of the state.
    ``run()`` returns the final state; completion events, in the order they
    were processed, are kept on :attr:`events`. When the loop exits with
    units still in flight, ``on_abandon`` is called to stop them.
    """

    def __init__(
        self,
        items: Sequence[WorkItem],
        run: RunFn,
        concurrency_limit: int,
        reporter: ProgressReporter | None = None,
        cancel_policy: CancelPolicy = CancelPolicy.ABANDON,
        on_abandon: Callable[[], object] | None = None,
    ):
        self.state = SchedulerState(items, concurrency_limit)
        self.run_fn = run
        self.reporter = reporter
        self.cancel_policy = CancelPolicy(cancel_policy)
        self.on_abandon = on_abandon
        self.events: list[CompletionEvent] = []
        self._cancel_event = asyncio.Event()

    def request_cancel(self) -> None:
        """Ask the control loop to stop dispatching. Call from the loop thread."""
        self._cancel_event.set()

    async def run(self) -> SchedulerState:
        state = self.state
        loop = asyncio.get_running_loop()
        executor = ThreadPoolExecutor(
            max_workers=max(1, min(state.concurrency_limit, state.total)),
            thread_name_prefix="git-gc",
        )
        pending: dict[asyncio.Future, WorkItem] = {}

        def _dispatch(item: WorkItem) -> None:
            log.debug("Dispatching %s", item)
            pending[loop.run_in_executor(executor, self.run_fn, item)] = item

        cancel_waiter: asyncio.Future | None = asyncio.ensure_future(self._cancel_event.wait())
        try:
            for item in state.start():
                _dispatch(item)
            if state.total == 0:
                self._report(None)

            while pending and not state.done:
                waitables = set(pending)
                if cancel_waiter is not None:
                    waitables.add(cancel_waiter)
                finished, _ = await asyncio.wait(waitables, return_when=asyncio.FIRST_COMPLETED)

                if cancel_waiter is not None and cancel_waiter in finished:
                    finished.discard(cancel_waiter)
                    cancel_waiter = None
                    log.warning(
                        "Cancellation requested (%s) with %d in flight",
                        self.cancel_policy.value,
                        state.in_flight,
                    )
                    state.cancel(self.cancel_policy)
                    if state.done:
                        break

                for future in finished:
                    item = pending.pop(future)
                    event = self._collect(future, item)
                    next_item = state.complete(event)
                    self.events.append(event)
                    self._report(event)
                    if next_item is not None:
                        _dispatch(next_item)
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            abandoned = bool(pending)
            for future in pending:
                future.cancel()
            if abandoned and self.on_abandon is not None:
                log.info("Abandoning %d in-flight units", len(pending))
                self.on_abandon()
            # Do not block the loop on abandoned threads
            executor.shutdown(wait=not abandoned, cancel_futures=True)

        log.info(
            "Scheduler finished: %d/%d completed, %d failed (%s)",
            state.completed,
            state.total,
            state.failed,
            state.phase.value,
        )
        return state

    @staticmethod
    def _collect(future: asyncio.Future, item: WorkItem) -> CompletionEvent:
        try:
            return future.result()
        except Exception as exc:
            log.error("Runner raised for %s: %s\n%s", item, exc, traceback.format_exc())
            now = datetime.now(timezone.utc)
            return CompletionEvent(
                item=item,
                outcome=Outcome.FAILURE,
                error=str(exc) or type(exc).__name__,
                started_at=now,
                finished_at=now,
            )

    def _report(self, event: CompletionEvent | None) -> None:
        if self.reporter is None:
            return
        if event is not None:
            self.reporter.mark_complete(event)
        self.reporter.update(self.state.completed)
