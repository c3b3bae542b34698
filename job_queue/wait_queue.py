"""
Wait Queue — chats awaiting a human agent.

A single shared list ``waiting_chats_queue``. Producers LPUSH, consumers
RPOP, so the oldest entry is always served first across all instances.
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.kv_store import KeyValueStore

logger = structlog.get_logger()

WAIT_QUEUE_KEY = "waiting_chats_queue"


class WaitQueue:

    def __init__(self, store: KeyValueStore, key: str = WAIT_QUEUE_KEY):
        self._store = store
        self._key = key

    async def push(self, chat_id: str) -> int:
        length = await self._store.push_left(self._key, chat_id)
        logger.info("chat_enqueued", chat_id=chat_id, queue_length=length)
        return length

    async def pop(self) -> Optional[str]:
        chat_id = await self._store.pop_right(self._key)
        if chat_id is not None:
            logger.info("chat_dequeued", chat_id=chat_id)
        return chat_id

    async def length(self) -> int:
        return await self._store.list_length(self._key)

    async def snapshot(self) -> list[str]:
        """Queued chat ids, oldest first."""
        return list(reversed(await self._store.list_range(self._key)))
