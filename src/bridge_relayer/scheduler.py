"""
Interval scheduler for the relayer's polling loops.

Each registered task has its own period. A tick is never started while the
previous tick of the same task is still running; the missed tick is counted
and logged instead. Stopping the scheduler halts the timers first and then
gives in-flight ticks a grace period to finish before they are cancelled.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

TickFn = Callable[[], Awaitable[Any]]


@dataclass
class PeriodicTask:
    """A named tick function and its run statistics."""
    name: str
    interval: float
    tick: TickFn
    tick_timeout: float | None = None
    runs: int = 0
    skips: int = 0
    failures: int = 0
    last_started_at: float | None = None
    last_error: str | None = None
    current: asyncio.Task | None = field(default=None, repr=False)
    timer: asyncio.Task | None = field(default=None, repr=False)

    @property
    def busy(self) -> bool:
        return self.current is not None and not self.current.done()


class Scheduler:
    """Runs PeriodicTasks concurrently with skip-if-busy semantics."""

    def __init__(self, shutdown_grace: float = 30.0):
        """
        Initialize the scheduler.

        Args:
            shutdown_grace: Seconds to wait for in-flight ticks on shutdown
        """
        self.shutdown_grace = shutdown_grace
        self.tasks: dict[str, PeriodicTask] = {}
        self.running = False
        self._stop_event = asyncio.Event()
        self._shutdown: asyncio.Task | None = None

    def add_task(
        self,
        name: str,
        interval: float,
        tick: TickFn,
        tick_timeout: float | None = None,
    ) -> PeriodicTask:
        """
        Register a periodic task. Must be called before ``start``.

        Raises:
            ValueError: If the name is taken or the interval is not positive
        """
        if name in self.tasks:
            raise ValueError(f"Task {name} already registered")
        if interval <= 0:
            raise ValueError(f"Interval for {name} must be positive, got {interval}")
        if self.running:
            raise RuntimeError("Cannot add tasks to a running scheduler")

        task = PeriodicTask(name=name, interval=interval, tick=tick, tick_timeout=tick_timeout)
        self.tasks[name] = task
        return task

    def start(self) -> None:
        """Start one timer per registered task; the first tick runs immediately."""
        if self.running:
            logger.warning("scheduler.already_running")
            return

        self.running = True
        for task in self.tasks.values():
            task.timer = asyncio.create_task(self._timer_loop(task), name=f"timer-{task.name}")
        logger.info(
            "scheduler.started",
            extra={"data": {name: task.interval for name, task in self.tasks.items()}},
        )

    async def _timer_loop(self, task: PeriodicTask) -> None:
        while not self._stop_event.is_set():
            self._launch(task)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=task.interval)
            except asyncio.TimeoutError:
                pass  # Next tick

    def _launch(self, task: PeriodicTask) -> None:
        if task.busy:
            task.skips += 1
            logger.warning(
                "scheduler.tick_skipped",
                extra={"data": {"task": task.name, "skips": task.skips}},
            )
            return
        task.current = asyncio.create_task(self._run_tick(task), name=f"tick-{task.name}")

    async def _run_tick(self, task: PeriodicTask) -> None:
        task.last_started_at = time.time()
        try:
            if task.tick_timeout is not None:
                await asyncio.wait_for(task.tick(), timeout=task.tick_timeout)
            else:
                await task.tick()
            task.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            task.failures += 1
            task.last_error = repr(e)
            logger.error(
                "scheduler.tick_failed",
                extra={"data": {"task": task.name}, "error": repr(e)},
                exc_info=True,
            )

    def request_stop(self) -> None:
        """Signal shutdown. Safe to call from a signal handler."""
        if not self._stop_event.is_set():
            logger.info("scheduler.stop_requested")
            self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    async def stop(self) -> None:
        """Request shutdown and wait until all ticks have finished or been cancelled."""
        self.request_stop()
        await self._drain_once()

    async def wait_stopped(self) -> None:
        """Block until shutdown is requested, then drain like ``stop``."""
        await self._stop_event.wait()
        await self._drain_once()

    async def _drain_once(self) -> None:
        if self._shutdown is None:
            self._shutdown = asyncio.create_task(self._drain())
        await self._shutdown

    async def _drain(self) -> None:
        timers = [task.timer for task in self.tasks.values() if task.timer is not None]
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

        in_flight = {task.current for task in self.tasks.values() if task.busy}
        if in_flight:
            logger.info(
                "scheduler.draining",
                extra={"data": {"inFlight": len(in_flight), "grace": self.shutdown_grace}},
            )
            _, pending = await asyncio.wait(in_flight, timeout=self.shutdown_grace)
            for tick in pending:
                tick.cancel()
            if pending:
                logger.warning(
                    "scheduler.ticks_cancelled", extra={"data": {"count": len(pending)}}
                )
                await asyncio.gather(*pending, return_exceptions=True)

        self.running = False
        logger.info("scheduler.stopped")

    def get_status(self) -> dict[str, dict[str, Any]]:
        """
        Get per-task run statistics.

        Returns:
            Mapping of task name to its counters and busy flag
        """
        return {
            name: {
                "interval": task.interval,
                "runs": task.runs,
                "skips": task.skips,
                "failures": task.failures,
                "busy": task.busy,
                "last_error": task.last_error,
            }
            for name, task in self.tasks.items()
        }
