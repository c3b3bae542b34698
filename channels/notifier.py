"""
Agent dashboard notifications.

Fire-and-forget events pushed to connected agent dashboards. Delivery is
best effort: a broken socket is dropped and never fails the caller.

Events:
  new_chat             a chat needs a human (broadcast)
  assigned_chat        a chat got an agent (broadcast)
  released_chat        a chat went back to the assistant (broadcast)
  agent_assignment     "you got a chat" (only the assigned agent)
  new_message          message persisted on a chat (broadcast)
  new_note             internal note added to a chat (broadcast)
  presence_update      connected agents changed (broadcast)
  dashboard_invalidated survey stats changed (broadcast)
"""
from __future__ import annotations

import abc
import json
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from channels.presence import PresenceRegistry
from models.schemas import AgentPresence, Chat, ChatMessage, ChatNote

logger = structlog.get_logger()


class Notifier(abc.ABC):

    @abc.abstractmethod
    async def new_chat(self, chat: Chat) -> None:
        ...

    @abc.abstractmethod
    async def assigned_chat(self, chat: Chat) -> None:
        ...

    @abc.abstractmethod
    async def released_chat(self, chat: Chat) -> None:
        ...

    @abc.abstractmethod
    async def agent_assignment(self, agent_id: str, chat: Chat) -> None:
        ...

    @abc.abstractmethod
    async def new_message(self, chat: Chat, message: ChatMessage) -> None:
        ...

    @abc.abstractmethod
    async def new_note(self, chat: Chat, note: ChatNote) -> None:
        ...

    @abc.abstractmethod
    async def presence_update(self, agents: list[AgentPresence]) -> None:
        ...

    @abc.abstractmethod
    async def dashboard_invalidated(self) -> None:
        ...


class WebSocketNotifier(Notifier):
    """
    Sends JSON frames over the agents' dashboard WebSockets.

    Sockets are keyed by the same connection id as the presence registry,
    so per-agent events reach every tab the agent has open.
    """

    def __init__(self, presence: PresenceRegistry):
        self._presence = presence
        self._sockets: dict[str, Any] = {}

    def attach(self, connection_id: str, ws: Any) -> None:
        self._sockets[connection_id] = ws

    def detach(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)

    @property
    def connection_count(self) -> int:
        return len(self._sockets)

    async def _emit(self, event: str, data: dict[str, Any], connection_ids: Optional[list[str]] = None) -> None:
        frame = json.dumps({
            "event": event,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }, default=str)
        targets = connection_ids if connection_ids is not None else list(self._sockets)
        for cid in targets:
            ws = self._sockets.get(cid)
            if ws is None:
                continue
            try:
                await ws.send_text(frame)
            except Exception as e:
                self._sockets.pop(cid, None)
                logger.warning("notify_failed", event_name=event, connection_id=cid, error=str(e))

    async def new_chat(self, chat: Chat) -> None:
        await self._emit("newChat", chat.model_dump(mode="json"))

    async def assigned_chat(self, chat: Chat) -> None:
        await self._emit("assignedChat", chat.model_dump(mode="json"))

    async def released_chat(self, chat: Chat) -> None:
        await self._emit("releasedChat", chat.model_dump(mode="json"))

    async def agent_assignment(self, agent_id: str, chat: Chat) -> None:
        await self._emit(
            "newAssignment",
            chat.model_dump(mode="json"),
            connection_ids=self._presence.connections_for(agent_id),
        )

    async def new_message(self, chat: Chat, message: ChatMessage) -> None:
        await self._emit("newMessage", {
            "chat": chat.model_dump(mode="json"),
            "message": message.model_dump(mode="json"),
        })

    async def new_note(self, chat: Chat, note: ChatNote) -> None:
        await self._emit("newInternalNote", {
            "chat_id": chat.id,
            "note": note.model_dump(mode="json"),
        })

    async def presence_update(self, agents: list[AgentPresence]) -> None:
        await self._emit("presenceUpdate", {
            "agents": [a.model_dump(mode="json") for a in agents],
        })

    async def dashboard_invalidated(self) -> None:
        await self._emit("dashboardUpdate", {})
