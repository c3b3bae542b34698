"""
Domain errors raised by the routing core.

The HTTP layer maps NotFound subclasses to 404 and the rest to 409.
"""
from __future__ import annotations


class RoutingError(Exception):
    """Base class for routing and assignment failures."""


class NotFoundError(RoutingError):
    pass


class ChatNotFoundError(NotFoundError):

    def __init__(self, chat_id: str):
        super().__init__(f"Chat {chat_id} not found")
        self.chat_id = chat_id


class AgentNotFoundError(NotFoundError):

    def __init__(self, agent_id: str):
        super().__init__(f"Agent {agent_id} not found")
        self.agent_id = agent_id


class AgentNotConnectedError(RoutingError):

    def __init__(self, agent_id: str):
        super().__init__(f"Agent {agent_id} is not connected")
        self.agent_id = agent_id


class ChatNotAssignedError(RoutingError):
    """An agent acted on a chat that is not assigned to them."""

    def __init__(self, chat_id: str, agent_id: str):
        super().__init__(f"Chat {chat_id} is not assigned to agent {agent_id}")
        self.chat_id = chat_id
        self.agent_id = agent_id


class InvalidChatTransitionError(RoutingError):

    def __init__(self, chat_id: str, from_status: str, to_status: str):
        super().__init__(f"Chat {chat_id} cannot move from {from_status} to {to_status}")
        self.chat_id = chat_id
        self.from_status = from_status
        self.to_status = to_status
