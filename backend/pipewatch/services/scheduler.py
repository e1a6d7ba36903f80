"""
Task scheduler: interval jobs, one-off background tasks and cancellable waits.

Every timer the monitors use (poll intervals, retry backoff, workflow wait
loops) runs inside a task owned by this scheduler, so ``cancel_all()`` on
shutdown deterministically cancels every outstanding wait.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine

logger = logging.getLogger(__name__)

JobHandler = Callable[[], Awaitable[Any]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class ScheduledTask:
    """Handle for a scheduled job or background task."""

    name: str
    task: asyncio.Task
    interval: float | None = None
    handler: JobHandler | None = None
    run_count: int = 0
    error_count: int = 0
    last_run: float | None = None
    last_error: str | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def done(self) -> bool:
        return self.task.done()

    def cancel(self) -> bool:
        return self.task.cancel()

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "interval": self.interval,
            "running": not self.task.done(),
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_run": self.last_run,
            "last_error": self.last_error,
        }


class Scheduler:
    def __init__(self, sleep: SleepFn = asyncio.sleep):
        self._sleep = sleep
        self._tasks: dict[str, ScheduledTask] = {}
        self._counter = 0

    @property
    def jobs(self) -> dict[str, ScheduledTask]:
        return {name: handle for name, handle in self._tasks.items() if not handle.done}

    async def sleep(self, seconds: float) -> None:
        """Wait inside the current scheduled task; cancelled by ``cancel_all()``."""
        await self._sleep(max(0.0, seconds))

    def every(
        self,
        name: str,
        interval: float,
        handler: JobHandler,
        *,
        immediate: bool = False,
    ) -> ScheduledTask:
        """Run ``handler`` every ``interval`` seconds until cancelled.

        A failing run is logged and the next tick proceeds as usual.
        """
        self.cancel(name)
        task = asyncio.create_task(self._interval_loop(name, interval, handler, immediate), name=name)
        handle = ScheduledTask(name=name, task=task, interval=interval, handler=handler)
        self._tasks[name] = handle
        logger.info("Scheduled job %s every %.1fs", name, interval)
        return handle

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> ScheduledTask:
        """Run a one-off coroutine as a tracked background task."""
        self._counter += 1
        key = f"{name}#{self._counter}"
        task = asyncio.create_task(self._guard(key, coro), name=key)
        handle = ScheduledTask(name=key, task=task)
        self._tasks[key] = handle
        task.add_done_callback(lambda _t: self._tasks.pop(key, None))
        return handle

    async def run_now(self, name: str) -> None:
        handle = self._tasks.get(name)
        if handle is None or handle.handler is None:
            raise KeyError(f"No interval job named {name}")
        await self._run_once(handle, handle.handler)

    def cancel(self, name: str) -> bool:
        handle = self._tasks.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        logger.debug("Cancelled job %s", name)
        return True

    async def cancel_all(self) -> None:
        handles = list(self._tasks.values())
        self._tasks.clear()
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)
        logger.info("Cancelled %d scheduled tasks", len(handles))

    # ── Internals ────────────────────────────────────────────────────────────

    async def _interval_loop(self, name: str, interval: float, handler: JobHandler, immediate: bool):
        if not immediate:
            await self.sleep(interval)
        while True:
            handle = self._tasks.get(name)
            if handle is None:
                return
            await self._run_once(handle, handler)
            await self.sleep(interval)

    async def _run_once(self, handle: ScheduledTask, handler: JobHandler) -> None:
        handle.last_run = time.time()
        handle.run_count += 1
        try:
            await handler()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            handle.error_count += 1
            handle.last_error = str(exc)
            logger.error("Scheduled job %s failed: %s", handle.name, exc, exc_info=True)

    async def _guard(self, name: str, coro: Coroutine[Any, Any, Any]) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Background task %s failed: %s", name, exc, exc_info=True)
            return None
