"""
Routing runtime — process-local state owned by one router instance.

Holds the timer registry, the presence registry, per-chat write locks and
background maintenance loops. Everything here dies with the process;
stop() cancels every live timer and loop.
"""
from __future__ import annotations

import asyncio
import weakref
import structlog
from typing import Any, Awaitable, Callable

from channels.presence import PresenceRegistry
from core.timers import TimerRegistry

logger = structlog.get_logger()


class RoutingRuntime:

    def __init__(self):
        self.timers = TimerRegistry()
        self.presence = PresenceRegistry()
        self._chat_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._loops: dict[str, asyncio.Task] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def chat_lock(self, chat_id: str) -> asyncio.Lock:
        """The lock serializing status/assignment writes for one chat."""
        lock = self._chat_locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._chat_locks[chat_id] = lock
        return lock

    def start(self) -> None:
        self._running = True
        logger.info("routing_runtime_started")

    def run_periodic(self, name: str, interval_seconds: float,
                     job: Callable[[], Awaitable[Any]]) -> None:
        """Run job every interval_seconds until stop(). Failures are logged."""
        existing = self._loops.pop(name, None)
        if existing:
            existing.cancel()
        self._loops[name] = asyncio.create_task(self._loop(name, interval_seconds, job))

    async def _loop(self, name: str, interval: float, job: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = await job()
                logger.info("maintenance_job_ran", job=name, result=result)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("maintenance_job_failed", job=name, error=str(e))

    async def stop(self) -> None:
        self._running = False
        loops = list(self._loops.values())
        self._loops.clear()
        for task in loops:
            task.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)
        await self.timers.shutdown()
        self.presence.clear()
        logger.info("routing_runtime_stopped")
