"""
Per-chat timers backed by asyncio tasks.

At most one live timer per (kind, chat_id). Starting a timer replaces the
previous one of the same kind for that chat. A timer removes its own entry
before running its callback, so a callback may start a new timer of the
same kind without cancelling itself.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable

logger = structlog.get_logger()

INACTIVITY = "inactivity"
RESPONSE = "response"

TimerCallback = Callable[..., Awaitable[Any]]


class TimerRegistry:

    def __init__(self):
        self._tasks: dict[tuple[str, str], asyncio.Task] = {}

    def start(self, kind: str, chat_id: str, delay_seconds: float,
              callback: TimerCallback, *args: Any) -> None:
        key = (kind, chat_id)
        self.cancel(kind, chat_id)
        task = asyncio.create_task(self._run(key, delay_seconds, callback, args))
        self._tasks[key] = task
        logger.debug("timer_started", kind=kind, chat_id=chat_id, delay=delay_seconds)

    def cancel(self, kind: str, chat_id: str) -> bool:
        task = self._tasks.pop((kind, chat_id), None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
        logger.debug("timer_cancelled", kind=kind, chat_id=chat_id)
        return True

    def is_active(self, kind: str, chat_id: str) -> bool:
        task = self._tasks.get((kind, chat_id))
        return task is not None and not task.done()

    def active_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("timers_shutdown", cancelled=len(tasks))

    async def _run(self, key: tuple[str, str], delay: float,
                   callback: TimerCallback, args: tuple) -> None:
        await asyncio.sleep(delay)
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        kind, chat_id = key
        try:
            await callback(*args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("timer_callback_failed", kind=kind, chat_id=chat_id, error=str(e))
