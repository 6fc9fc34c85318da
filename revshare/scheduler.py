"""
Periodic task scheduling.

- PeriodicTask: one coroutine on a fixed interval, never overlapping itself
- TaskScheduler: owns the ingestion and snapshot tasks; ``paused()``
  suspends them while a distribution reads its frozen view

A failing run is logged and counted; the loop keeps going and the next run
starts from persisted state.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .models import utcnow

logger = logging.getLogger(__name__)


class PeriodicTask:
    """A coroutine function run every ``interval_seconds`` with a running guard."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        run_immediately: bool = True,
    ):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately

        self.runs = 0
        self.failures = 0
        self.skipped = 0
        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

        self._running = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._resume = asyncio.Event()
        self._resume.set()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> bool:
        """
        Run the task now unless a previous run is still in progress.

        Returns:
            False if skipped because the task was already running.
        """
        if self._running:
            self.skipped += 1
            logger.warning(f"Task {self.name} still running; skipping this trigger")
            return False

        self._running = True
        self._idle.clear()
        try:
            await self.func()
            self.last_error = None
        except asyncio.CancelledError:
            logger.info(f"Task {self.name} cancelled mid-run; nothing was committed")
            raise
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            logger.error(f"Task {self.name} failed: {e}", exc_info=True)
        finally:
            self.runs += 1
            self.last_run_at = utcnow()
            self._running = False
            self._idle.set()
        return True

    async def _loop(self) -> None:
        if not self.run_immediately:
            await self._sleep_interval()
        while not self._stop.is_set():
            await self._resume.wait()
            if self._stop.is_set():
                break
            await self.run_once()
            await self._sleep_interval()

    async def _sleep_interval(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            pass

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info(f"Started task {self.name} (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the loop, cancelling an in-flight run."""
        self._stop.set()
        self._resume.set()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info(f"Stopped task {self.name}")

    def pause(self) -> None:
        self._resume.clear()

    def resume(self) -> None:
        self._resume.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "running": self._running,
            "paused": not self._resume.is_set(),
            "runs": self.runs,
            "failures": self.failures,
            "skipped": self.skipped,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


class TaskScheduler:
    """Owns the periodic tasks of one engine instance."""

    def __init__(self):
        self._tasks: Dict[str, PeriodicTask] = {}

    def add(self, task: PeriodicTask) -> PeriodicTask:
        if task.name in self._tasks:
            raise ValueError(f"Task {task.name} already registered")
        self._tasks[task.name] = task
        return task

    def get(self, name: str) -> PeriodicTask:
        return self._tasks[name]

    @property
    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks.values())

    def start(self) -> None:
        for task in self._tasks.values():
            task.start()

    async def stop(self) -> None:
        await asyncio.gather(*(task.stop() for task in self._tasks.values()))

    @asynccontextmanager
    async def paused(self):
        """Suspend every task and wait for in-flight runs to finish."""
        for task in self._tasks.values():
            task.pause()
        try:
            await asyncio.gather(*(task.wait_idle() for task in self._tasks.values()))
            yield self
        finally:
            for task in self._tasks.values():
                task.resume()

    def status(self) -> List[Dict[str, Any]]:
        return [task.status() for task in self._tasks.values()]
