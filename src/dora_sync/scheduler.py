"""Interval scheduler for sync jobs.

Each trigger gets its own asyncio task: sleep the initial delay, run the job,
sleep the interval, repeat. Triggers are independent of each other, but a
trigger never overlaps with itself: a run requested while the previous one
is still in flight is skipped.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger("dora_sync.scheduler")


@dataclass(frozen=True)
class Trigger:
    """A named job with its fixed-delay schedule (seconds)."""

    name: str
    interval: float
    initial_delay: float
    job: Callable[[], Awaitable[Any]]


class JobScheduler:
    """Runs triggers until ``stop()`` is called.

    Example:
        >>> scheduler = JobScheduler()
        >>> scheduler.add(Trigger("commits", 3600, 10, service.sync_commits))
        >>> await scheduler.run_forever()
    """

    def __init__(
        self, on_complete: Optional[Callable[[str, Any], None]] = None
    ) -> None:
        """
        Args:
            on_complete: Called with (trigger name, job return value) after
                every run that did not raise
        """
        self._triggers: dict[str, Trigger] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._stop = asyncio.Event()
        self.on_complete = on_complete

    @property
    def names(self) -> list[str]:
        return list(self._triggers)

    def add(self, trigger: Trigger) -> None:
        if trigger.name in self._triggers:
            raise ValueError(f"Trigger '{trigger.name}' already registered")
        if trigger.interval <= 0:
            raise ValueError(f"Trigger '{trigger.name}' interval must be > 0")
        if trigger.initial_delay < 0:
            raise ValueError(f"Trigger '{trigger.name}' initial delay must be >= 0")
        self._triggers[trigger.name] = trigger
        self._locks[trigger.name] = asyncio.Lock()

    async def run_now(self, name: str) -> Any:
        """Run one trigger immediately.

        Returns the job's return value, or None if the job raised or the
        trigger was already running.

        Raises:
            KeyError: If no trigger with that name is registered
        """
        trigger = self._triggers[name]
        lock = self._locks[name]
        if lock.locked():
            logger.warning("Job %s is still running, skipping this run", name)
            return None

        async with lock:
            start = time.monotonic()
            logger.info("Starting job %s", name)
            try:
                result = await trigger.job()
            except Exception as e:
                logger.error("Job %s failed: %s", name, e, exc_info=True)
                return None
            logger.info(
                "Job %s finished in %.1fs", name, time.monotonic() - start
            )

        if self.on_complete is not None:
            try:
                self.on_complete(name, result)
            except Exception as e:
                logger.warning("Completion hook for %s failed: %s", name, e)
        return result

    async def _sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _loop(self, trigger: Trigger) -> None:
        if await self._sleep(trigger.initial_delay):
            return
        while not self._stop.is_set():
            await self.run_now(trigger.name)
            if await self._sleep(trigger.interval):
                return

    async def run_forever(self) -> None:
        if not self._triggers:
            logger.warning("No triggers registered, nothing to schedule")
            return
        self._stop.clear()
        logger.info(
            "Scheduler starting",
            extra={
                "triggers": {
                    t.name: {"interval": t.interval, "initial_delay": t.initial_delay}
                    for t in self._triggers.values()
                }
            },
        )
        tasks = [
            asyncio.create_task(self._loop(t), name=f"trigger:{t.name}")
            for t in self._triggers.values()
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stop.set()
