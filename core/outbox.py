"""
Outbound helpers shared by the router and the assignment scheduler.

Every message that reaches the contact or the agents' timeline goes
through here, so it is persisted and announced to dashboards the same way.
"""
from __future__ import annotations

import structlog
from typing import Optional

from channels.base import MessagingChannel
from channels.notifier import Notifier
from core.messages import ASSISTANT_NAME
from database.repository_base import ChatRepository
from models.schemas import Chat, ChatMessage, MessageSender

logger = structlog.get_logger()


class ChatOutbox:

    def __init__(self, repo: ChatRepository, channel: MessagingChannel, notifier: Notifier):
        self._repo = repo
        self._channel = channel
        self._notifier = notifier

    async def send_bot(self, chat: Chat, text: str, typing_seconds: Optional[float] = None) -> ChatMessage:
        """Send as the assistant and record it. Raises ChannelError if delivery fails."""
        if typing_seconds:
            await self._channel.send_typing(chat.contact_id, typing_seconds)
        await self._channel.send(chat.contact_id, text)
        message = ChatMessage(
            chat_id=chat.id,
            sender=MessageSender.BOT,
            sender_name=ASSISTANT_NAME,
            content=text,
        )
        return await self._record(chat, message)

    async def send_agent(self, chat: Chat, agent_id: str, agent_name: str, text: str) -> ChatMessage:
        """Record first so the agent's timeline shows the attempt, then deliver."""
        message = ChatMessage(
            chat_id=chat.id,
            sender=MessageSender.AGENT,
            sender_id=agent_id,
            sender_name=agent_name,
            content=text,
        )
        await self._record(chat, message)
        await self._channel.send(chat.contact_id, text)
        return message

    async def note(self, chat: Chat, text: str) -> ChatMessage:
        """System note visible to agents only."""
        message = ChatMessage(chat_id=chat.id, sender=MessageSender.SYSTEM, content=text)
        return await self._record(chat, message)

    async def _record(self, chat: Chat, message: ChatMessage) -> ChatMessage:
        await self._repo.add_message(message)
        await self._notifier.new_message(chat, message)
        return message
