"""
Per-contact processing lease.

A lease is a TTL-bound key ``chat:processing:{contact}`` written with
SET-IF-ABSENT. Whoever wrote it holds exclusive rights to mutate that
contact's dialogue state until it is released or expires. Release only
deletes the key when the stored token is still ours, so a holder whose
lease expired cannot free someone else's.
"""
from __future__ import annotations

import asyncio
import time
import uuid
import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from database.kv_store import KeyValueStore

logger = structlog.get_logger()

LEASE_KEY_PREFIX = "chat:processing:"
DEFAULT_LEASE_TTL_SECONDS = 30.0
_POLL_INTERVAL_SECONDS = 0.1


def lease_key(contact_id: str) -> str:
    return f"{LEASE_KEY_PREFIX}{contact_id}"


class Lease:
    """Handle returned by a successful acquire."""

    def __init__(self, contact_id: str, token: str):
        self.contact_id = contact_id
        self.token = token

    def __repr__(self) -> str:
        return f"Lease(contact_id={self.contact_id!r})"


class LeaseManager:

    def __init__(self, store: KeyValueStore, ttl_seconds: float = DEFAULT_LEASE_TTL_SECONDS):
        self._store = store
        self._ttl = ttl_seconds

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    async def acquire(
        self,
        contact_id: str,
        ttl_seconds: Optional[float] = None,
        wait_seconds: float = 0.0,
    ) -> Optional[Lease]:
        """
        Try to take the lease. With wait_seconds > 0 the call polls until the
        deadline; otherwise it returns None immediately when the lease is held.
        """
        ttl = ttl_seconds if ttl_seconds is not None else self._ttl
        token = uuid.uuid4().hex
        deadline = time.monotonic() + wait_seconds
        while True:
            if await self._store.set_if_absent(lease_key(contact_id), token, ttl_seconds=ttl):
                logger.debug("lease_acquired", contact_id=contact_id, ttl=ttl)
                return Lease(contact_id, token)
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(_POLL_INTERVAL_SECONDS)

    async def release(self, lease: Lease) -> None:
        if not await self._store.delete_if_equals(lease_key(lease.contact_id), lease.token):
            logger.warning("lease_lost_before_release", contact_id=lease.contact_id)
            return
        logger.debug("lease_released", contact_id=lease.contact_id)

    async def is_held(self, contact_id: str) -> bool:
        return await self._store.exists(lease_key(contact_id))

    @asynccontextmanager
    async def hold(self, contact_id: str, wait_seconds: float = 0.0) -> AsyncIterator[Optional[Lease]]:
        """Yield the lease (or None when unavailable) and always release it."""
        lease = await self.acquire(contact_id, wait_seconds=wait_seconds)
        try:
            yield lease
        finally:
            if lease is not None:
                await self.release(lease)
