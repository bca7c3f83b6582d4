"""
Cooperative, time-sliced scheduler for the import pipeline.

Stages are written as generators: every bare ``yield`` marks a safe point
between two independent units of work (one buffer, one texture, one
primitive, ...). A ``Task`` wraps such a generator behind an explicit
``resume() -> Step`` contract; the scheduler keeps resuming a task within a
tick until the quantum timer expires, then hands control back to the host.

Yielding the ``WAIT`` sentinel means "polling external work" and always
ends the current tick.
"""

import asyncio
import logging
import time
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generator

logger = logging.getLogger(__name__)

WAIT = object()

StepGenerator = Generator[Any, None, Any]


class StepKind(Enum):
    CONTINUE = "continue"    # safe point reached, quantum left
    YIELD = "yield"          # suspend until the next tick
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Step:
    kind: StepKind
    result: Any = None
    error: BaseException | None = None

    @property
    def finished(self) -> bool:
        return self.kind in (StepKind.DONE, StepKind.FAILED, StepKind.CANCELLED)


# ---------------------------------------------------------------------------
# Timer / cancellation
# ---------------------------------------------------------------------------

class YieldTimer:
    """Tracks wall time elapsed since the last suspension."""

    def __init__(self, quantum_ms: float = 10.0,
                 clock: Callable[[], float] = time.perf_counter):
        self.quantum_ms = quantum_ms
        self._clock = clock
        self._start = clock()

    def restart(self) -> None:
        self._start = self._clock()

    @property
    def elapsed_ms(self) -> float:
        return (self._clock() - self._start) * 1000.0

    @property
    def expired(self) -> bool:
        return self.elapsed_ms > self.quantum_ms


class CancellationToken:
    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

class Task:
    """A suspendable stage: ``resume()`` runs it up to its next safe point."""

    def __init__(self, steps: StepGenerator, timer: YieldTimer | None = None,
                 token: CancellationToken | None = None, name: str = ""):
        self._steps = steps
        self._timer = timer
        self._token = token
        self.name = name
        self._final: Step | None = None

    @property
    def finished(self) -> bool:
        return self._final is not None

    def cancel(self) -> Step:
        self._steps.close()
        self._final = Step(StepKind.CANCELLED)
        return self._final

    def resume(self) -> Step:
        if self._final is not None:
            return self._final
        if self._token is not None and self._token.cancelled:
            return self.cancel()
        try:
            value = next(self._steps)
        except StopIteration as stop:
            self._final = Step(StepKind.DONE, result=stop.value)
            return self._final
        except Exception as e:
            self._final = Step(StepKind.FAILED, error=e)
            return self._final
        if value is WAIT:
            return Step(StepKind.YIELD)
        if self._timer is not None and self._timer.expired:
            return Step(StepKind.YIELD)
        return Step(StepKind.CONTINUE)


# ---------------------------------------------------------------------------
# Interleaved fan-out
# ---------------------------------------------------------------------------

class InterleavedTaskSet:
    """Round-robin runner for independently suspendable sub-pipelines.

    ``on_completed(index, result)`` fires as each sub-task finishes, so
    progress is reported per item. A failing sub-task fails the whole set.
    """

    def __init__(self):
        self._tasks: list[Task] = []
        self.results: list[Any] = []
        self.num_completed = 0
        self.on_completed: Callable[[int, Any], None] | None = None

    def __len__(self) -> int:
        return len(self._tasks)

    def add(self, steps: StepGenerator) -> int:
        self._tasks.append(Task(steps, name=f"subtask {len(self._tasks)}"))
        self.results.append(None)
        return len(self._tasks) - 1

    def run(self) -> StepGenerator:
        pending = list(range(len(self._tasks)))
        try:
            while pending:
                all_waiting = True
                for index in list(pending):
                    step = self._tasks[index].resume()
                    if step.kind is StepKind.FAILED:
                        raise step.error
                    if step.kind is StepKind.DONE:
                        pending.remove(index)
                        self.results[index] = step.result
                        self.num_completed += 1
                        if self.on_completed:
                            self.on_completed(index, step.result)
                        all_waiting = False
                    elif step.kind is StepKind.CONTINUE:
                        all_waiting = False
                    yield
                if pending and all_waiting:
                    yield WAIT
        finally:
            for task in self._tasks:
                if not task.finished:
                    task.cancel()
        return self.results


def await_future(future: Future) -> StepGenerator:
    """Poll an external job at each tick instead of blocking the scheduler."""
    while not future.done():
        yield WAIT
    return future.result()


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class CooperativeScheduler:
    def __init__(self, quantum_ms: float = 10.0,
                 clock: Callable[[], float] = time.perf_counter,
                 token: CancellationToken | None = None):
        self.timer = YieldTimer(quantum_ms, clock)
        self.token = token or CancellationToken()
        self.ticks = 0

    def task(self, steps: StepGenerator, name: str = "") -> Task:
        return Task(steps, timer=self.timer, token=self.token, name=name)

    def tick(self, task: Task) -> Step:
        """Run ``task`` until it suspends or finishes; one quantum at most."""
        self.ticks += 1
        self.timer.restart()
        while True:
            step = task.resume()
            if step.kind is not StepKind.CONTINUE:
                return step

    def run(self, task: Task) -> Step:
        """Drive ``task`` to completion, blocking the caller."""
        while True:
            step = self.tick(task)
            if step.finished:
                logger.debug("Task %s finished after %d ticks: %s",
                             task.name, self.ticks, step.kind.value)
                return step

    async def run_async(self, task: Task) -> Step:
        """Drive ``task`` on the event loop, yielding to it between ticks."""
        while True:
            step = self.tick(task)
            if step.finished:
                logger.debug("Task %s finished after %d ticks: %s",
                             task.name, self.ticks, step.kind.value)
                return step
            await asyncio.sleep(0)
