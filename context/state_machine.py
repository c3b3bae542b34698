"""
Chat status machine — the only place a Chat's status and assignee change.

  AUTO_RESPONDER ──escalate, no agent──▶ PENDING_ASSIGNMENT
        │                                      │
        └───────────assign──▶ ACTIVE ◀──assign─┘
                                │
        ◀──release / timeout───┘   (ACTIVE → ACTIVE on reassignment)

Invariant: ACTIVE ⇔ assigned_agent_id is set.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from core.errors import InvalidChatTransitionError
from models.schemas import Chat, ChatStatus

logger = structlog.get_logger()


ALLOWED_TRANSITIONS: dict[ChatStatus, frozenset[ChatStatus]] = {
    ChatStatus.AUTO_RESPONDER: frozenset({
        ChatStatus.AUTO_RESPONDER, ChatStatus.PENDING_ASSIGNMENT, ChatStatus.ACTIVE,
    }),
    ChatStatus.PENDING_ASSIGNMENT: frozenset({
        ChatStatus.PENDING_ASSIGNMENT, ChatStatus.ACTIVE, ChatStatus.AUTO_RESPONDER,
    }),
    ChatStatus.ACTIVE: frozenset({
        ChatStatus.ACTIVE, ChatStatus.AUTO_RESPONDER,
    }),
}


def can_transition(from_status: ChatStatus, to_status: ChatStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def check_invariant(chat: Chat) -> bool:
    if chat.status == ChatStatus.ACTIVE:
        return chat.assigned_agent_id is not None
    return chat.assigned_agent_id is None


def transition(chat: Chat, to_status: ChatStatus, agent_id: Optional[str] = None) -> Chat:
    """
    Move the chat in place and return it. ACTIVE requires an agent id;
    every other status clears the assignee.
    """
    if not can_transition(chat.status, to_status):
        raise InvalidChatTransitionError(chat.id, chat.status.value, to_status.value)
    if to_status == ChatStatus.ACTIVE and not agent_id:
        raise InvalidChatTransitionError(chat.id, chat.status.value, to_status.value)

    from_status = chat.status
    chat.status = to_status
    chat.assigned_agent_id = agent_id if to_status == ChatStatus.ACTIVE else None
    chat.updated_at = datetime.now(timezone.utc)

    if from_status != to_status:
        logger.info("chat_status_changed",
                    chat_id=chat.id,
                    from_status=from_status.value,
                    to_status=to_status.value,
                    agent_id=chat.assigned_agent_id)
    return chat


def normalize(chat: Chat) -> Chat:
    """Repair a chat loaded in an inconsistent shape back to AUTO_RESPONDER."""
    if chat.status == ChatStatus.ACTIVE and chat.assigned_agent_id:
        return chat
    if chat.status == ChatStatus.PENDING_ASSIGNMENT:
        chat.assigned_agent_id = None
        return chat
    if chat.status != ChatStatus.AUTO_RESPONDER or chat.assigned_agent_id is not None:
        logger.warning("chat_normalized",
                       chat_id=chat.id,
                       status=chat.status.value,
                       agent_id=chat.assigned_agent_id)
    chat.status = ChatStatus.AUTO_RESPONDER
    chat.assigned_agent_id = None
    return chat
