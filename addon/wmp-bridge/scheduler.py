#!/usr/bin/env python3
"""
Cooperative task scheduler.

All timing in the bridge goes through one Scheduler. The scheduler itself
owns exactly one external "call me once after N seconds" timer: every time
the earliest wake time among the armed tasks moves earlier, the outstanding
timer is cancelled and re-armed, and a generation counter is bumped so that a
fire from a superseded timer is recognised and ignored.

On each fire the due tasks run in ascending wake-time order. A task is
disarmed before its callback runs; a callback that wants to run again must
re-arm its own task. Exceptions raised by a callback are logged and otherwise
treated like a normal return.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Hashable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


TimerFn = Callable[[float, Callable[[], None]], TimerHandle]


class AsyncioTimer:
    """External timer primitive backed by ``loop.call_later``."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def __call__(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self._loop.call_later(delay, callback)


class Task:
    """A schedulable unit of work owned by one gateway or discovery run."""

    def __init__(
        self,
        scheduler: Scheduler,
        task_id: str,
        owner: Hashable,
        fn: Callable[..., Any],
        args: tuple[Any, ...],
    ) -> None:
        self._scheduler = scheduler
        self.id = task_id
        self.owner = owner
        self.fn = fn
        self.args = args
        self.when: float | None = None
        self.closed = False

    def __repr__(self) -> str:
        return f"Task({self.id!r}, when={self.when}, closed={self.closed})"

    @property
    def armed(self) -> bool:
        return self.when is not None and not self.closed

    def delay(self, seconds: float, *, replace: bool = False) -> Task:
        """Arm to run ``seconds`` from now (earliest request wins)."""
        return self.schedule_at(
            self._scheduler.now() + max(0.0, float(seconds)), replace=replace
        )

    def schedule_at(self, when: float, *, replace: bool = False) -> Task:
        """Arm to run at epoch ``when`` (earliest request wins)."""
        if self.closed:
            logger.debug("Task %s is closed, schedule ignored", self.id)
            return self
        if self.when is not None and not replace and self.when <= when:
            return self
        self.when = float(when)
        self._scheduler._task_rearmed(self, replace)
        return self

    def suspend(self) -> None:
        """Disarm without destroying."""
        self.when = None

    def close(self) -> None:
        """Destroy the task."""
        self._scheduler._remove(self)


class Scheduler:
    """Single-threaded cooperative scheduler over one external timer."""

    def __init__(
        self,
        timer: TimerFn,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._timer = timer
        self._clock = clock
        self._tasks: dict[str, Task] = {}
        self._handle: TimerHandle | None = None
        self._armed_at: float | None = None
        self._generation = 0
        self._dispatching = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def now(self) -> float:
        return self._clock()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def next_wake(self) -> float | None:
        return self._armed_at

    def new_task(
        self,
        task_id: str,
        owner: Hashable,
        fn: Callable[..., Any],
        *args: Any,
    ) -> Task:
        """Create a task. An existing task with the same id is closed."""
        old = self._tasks.get(task_id)
        if old is not None:
            logger.debug("Replacing existing task %s", task_id)
            old.close()
        task = Task(self, task_id, owner, fn, args)
        self._tasks[task_id] = task
        return task

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def tasks_for(self, owner: Hashable) -> list[Task]:
        return [t for t in self._tasks.values() if t.owner == owner]

    def close_owner(self, owner: Hashable) -> int:
        """Destroy every task owned by ``owner``."""
        tasks = self.tasks_for(owner)
        for task in tasks:
            task.close()
        return len(tasks)

    def shutdown(self) -> None:
        for task in list(self._tasks.values()):
            task.close()
        self._disarm()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _remove(self, task: Task) -> None:
        task.closed = True
        task.when = None
        if self._tasks.get(task.id) is task:
            del self._tasks[task.id]

    def _pending_min(self) -> float | None:
        pending = [t.when for t in self._tasks.values() if t.when is not None]
        return min(pending) if pending else None

    def _task_rearmed(self, task: Task, replace: bool) -> None:
        if self._dispatching:
            # Recomputed once the current dispatch pass finishes.
            return
        if replace:
            new_min = self._pending_min()
            if new_min is None:
                self._disarm()
            elif new_min != self._armed_at:
                self._arm(new_min)
            return
        if self._armed_at is None or (task.when is not None and task.when < self._armed_at):
            self._arm(task.when)

    def _arm(self, when: float | None) -> None:
        if when is None:
            self._disarm()
            return
        if self._handle is not None:
            self._handle.cancel()
        self._generation += 1
        generation = self._generation
        self._armed_at = when
        delay = max(0.0, when - self.now())
        self._handle = self._timer(delay, lambda: self._fire(generation))

    def _disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._armed_at = None

    def _fire(self, generation: int) -> None:
        if generation != self._generation:
            logger.debug(
                "Stale timer fire ignored (gen %s, current %s)",
                generation,
                self._generation,
            )
            return
        self._handle = None
        self._armed_at = None
        self._dispatching = True
        try:
            now = self.now()
            due = sorted(
                (t for t in self._tasks.values() if t.when is not None and t.when <= now),
                key=lambda t: t.when,
            )
            for task in due:
                # An earlier callback may have closed, suspended or moved it.
                if task.closed or task.when is None or task.when > now:
                    continue
                task.when = None
                try:
                    task.fn(task, *task.args)
                except Exception:  # pylint: disable=broad-exception-caught
                    logger.exception("Task %s raised, continuing", task.id)
        finally:
            self._dispatching = False
        self._arm(self._pending_min())
