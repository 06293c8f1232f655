"""Scheduler - one loop for every periodic job of the orchestrator."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from orchestrator.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PeriodicTask:
    name: str
    interval_seconds: float
    func: Callable[[], Awaitable[object]]
    runs: int = 0
    failures: int = 0
    last_error: str | None = None


@dataclass(order=True)
class _Due:
    at: datetime
    seq: int
    task: PeriodicTask = field(compare=False)


class Scheduler:
    """
    Heap of due times; due tasks run one at a time from a single loop.

    A task that raises is logged and rescheduled like any other run.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.clock = clock
        self.sleep = sleep
        self.tasks: dict[str, PeriodicTask] = {}
        self._heap: list[_Due] = []
        self._seq = itertools.count()
        self._stopping = asyncio.Event()

    def add(self, name: str, interval_seconds: float, func: Callable[[], Awaitable[object]],
            *, run_immediately: bool = True) -> PeriodicTask:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if name in self.tasks:
            raise ValueError(f"Task {name!r} is already scheduled")
        task = PeriodicTask(name=name, interval_seconds=interval_seconds, func=func)
        self.tasks[name] = task
        first = self.clock() if run_immediately else self.clock() + timedelta(seconds=interval_seconds)
        heapq.heappush(self._heap, _Due(first, next(self._seq), task))
        return task

    def next_due(self) -> datetime | None:
        return self._heap[0].at if self._heap else None

    async def run_due(self, now: datetime | None = None) -> list[str]:
        """Run every task due at `now`. Returns the names that ran, in order."""
        now = now or self.clock()
        ran = []
        while self._heap and self._heap[0].at <= now:
            entry = heapq.heappop(self._heap)
            task = entry.task
            try:
                await task.func()
                task.last_error = None
            except Exception as e:
                task.failures += 1
                task.last_error = str(e)
                logger.error(f"Scheduled task {task.name} failed: {e}", exc_info=True)
            task.runs += 1
            ran.append(task.name)
            heapq.heappush(
                self._heap, _Due(now + timedelta(seconds=task.interval_seconds), next(self._seq), task)
            )
        return ran

    async def run_forever(self, max_idle_seconds: float = 1.0) -> None:
        logger.info(f"Scheduler started with {len(self.tasks)} task(s): {', '.join(self.tasks)}")
        self._stopping.clear()
        while not self._stopping.is_set():
            await self.run_due()
            due = self.next_due()
            wait = max_idle_seconds
            if due is not None:
                wait = min(max_idle_seconds, max(0.0, (due - self.clock()).total_seconds()))
            await self.sleep(wait)
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stopping.set()
