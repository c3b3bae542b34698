"""
Dialogue state store — per-contact position in the automated dialogue.

State lives in the shared key-value store under
``conversation_state:{contact}`` as JSON with a 24h TTL that is refreshed
on every write. A missing, expired or undecodable entry is replaced by the
default state (step=START) and written back, so two reads of a fresh
contact observe the same stored value.
"""
from __future__ import annotations

import json
import structlog
from typing import Optional

from pydantic import ValidationError

from database.kv_store import KeyValueStore
from models.schemas import DialogueState

logger = structlog.get_logger()

STATE_KEY_PREFIX = "conversation_state:"
STATE_TTL_SECONDS = 24 * 60 * 60


def state_key(contact_id: str) -> str:
    return f"{STATE_KEY_PREFIX}{contact_id}"


class DialogueStateStore:
    """get / set / reset over the shared store."""

    def __init__(self, store: KeyValueStore, ttl_seconds: float = STATE_TTL_SECONDS):
        self._store = store
        self._ttl = ttl_seconds

    async def get(self, contact_id: str) -> DialogueState:
        raw = await self._store.get(state_key(contact_id))
        state = self._decode(contact_id, raw)
        if state is None:
            state = DialogueState()
            await self.set(contact_id, state)
        return state

    async def set(self, contact_id: str, state: DialogueState) -> None:
        await self._store.set(
            state_key(contact_id),
            state.model_dump_json(),
            ttl_seconds=self._ttl,
        )

    async def reset(self, contact_id: str) -> DialogueState:
        state = DialogueState()
        await self.set(contact_id, state)
        logger.info("dialogue_state_reset", contact_id=contact_id)
        return state

    @staticmethod
    def _decode(contact_id: str, raw: Optional[str]) -> Optional[DialogueState]:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("state payload is not an object")
            # Merge over defaults so entries missing newer fields still load.
            merged = {**DialogueState().model_dump(), **data}
            return DialogueState.model_validate(merged)
        except (ValueError, ValidationError) as e:
            logger.warning("dialogue_state_undecodable",
                           contact_id=contact_id, error=str(e))
            return None
