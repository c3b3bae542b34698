"""
Presence registry — which agents are connected to this process.

Keyed by connection id, so an agent with two dashboard tabs appears twice;
queries deduplicate by agent id while keeping connection order. The
registry is process-local: a deployment with several router instances
must pin each agent's socket to one instance.
"""
from __future__ import annotations

import structlog
from typing import Optional

from models.schemas import Agent, AgentPresence, AgentRole

logger = structlog.get_logger()


class PresenceRegistry:

    def __init__(self):
        self._connections: dict[str, AgentPresence] = {}

    def register(self, connection_id: str, agent: Agent) -> AgentPresence:
        presence = AgentPresence.from_agent(connection_id, agent)
        self._connections[connection_id] = presence
        logger.info("agent_connected", connection_id=connection_id, agent_id=agent.id)
        return presence

    def unregister(self, connection_id: str) -> Optional[AgentPresence]:
        presence = self._connections.pop(connection_id, None)
        if presence:
            logger.info("agent_disconnected",
                        connection_id=connection_id, agent_id=presence.agent_id)
        return presence

    def is_connected(self, agent_id: str) -> bool:
        return any(p.agent_id == agent_id for p in self._connections.values())

    def connected(self, role: Optional[AgentRole] = None) -> list[AgentPresence]:
        """One entry per agent, in the order agents first connected."""
        seen: set[str] = set()
        result: list[AgentPresence] = []
        for presence in self._connections.values():
            if role is not None and presence.role != role:
                continue
            if presence.agent_id in seen:
                continue
            seen.add(presence.agent_id)
            result.append(presence)
        return result

    def connected_agent_ids(self, role: Optional[AgentRole] = None) -> list[str]:
        return [p.agent_id for p in self.connected(role)]

    def connections_for(self, agent_id: str) -> list[str]:
        return [cid for cid, p in self._connections.items() if p.agent_id == agent_id]

    def clear(self) -> None:
        self._connections.clear()

    def __len__(self) -> int:
        return len(self._connections)
