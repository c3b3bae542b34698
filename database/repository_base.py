"""
Abstract Chat Repository — Interface for all persistence backends.

Implementations:
  - SqlChatRepository      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryChatRepository (dict-based, single-process, no persistence)

Every method returns typed models from models.schemas, never ORM rows.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import (
    Agent, Chat, ChatMessage, ChatNote, ChatPage, Client, DebtContract, DebtDetail,
    SurveyRecord,
)


class ChatRepository(ABC):
    """Interface that all repository backends must implement."""

    # ── Chats ─────────────────────────────────────────────────

    @abstractmethod
    async def find_chat_by_contact(self, contact_id: str) -> Optional[Chat]:
        ...

    @abstractmethod
    async def find_chat_by_id(self, chat_id: str) -> Optional[Chat]:
        ...

    @abstractmethod
    async def create_chat(self, contact_id: str, customer_name: Optional[str] = None) -> Chat:
        ...

    @abstractmethod
    async def save_chat(self, chat: Chat) -> Chat:
        """Persist status, assignee, name and timestamps of an existing chat."""
        ...

    @abstractmethod
    async def increment_unread(self, chat_id: str, amount: int = 1) -> None:
        ...

    @abstractmethod
    async def reset_unread(self, chat_id: str) -> None:
        ...

    @abstractmethod
    async def count_active_chats(self, agent_id: str) -> int:
        ...

    @abstractmethod
    async def find_stale_active_chats(self, updated_before: datetime) -> list[Chat]:
        """ACTIVE chats whose updated_at is older than the cutoff."""
        ...

    @abstractmethod
    async def list_chats(self, page: int = 1, limit: int = 50) -> ChatPage:
        """Chats ordered by updated_at, newest first. page starts at 1."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def add_message(self, message: ChatMessage) -> ChatMessage:
        ...

    @abstractmethod
    async def list_messages(self, chat_id: str, limit: int = 100) -> list[ChatMessage]:
        """Most recent messages, oldest first."""
        ...

    @abstractmethod
    async def mark_messages_read(self, chat_id: str) -> int:
        """Stamp read_at on unread customer messages. Returns how many."""
        ...

    # ── Internal notes ────────────────────────────────────────

    @abstractmethod
    async def add_note(self, note: ChatNote) -> ChatNote:
        ...

    @abstractmethod
    async def list_notes(self, chat_id: str) -> list[ChatNote]:
        """Notes of a chat, oldest first."""
        ...

    # ── Agents ────────────────────────────────────────────────

    @abstractmethod
    async def find_agent_by_id(self, agent_id: str) -> Optional[Agent]:
        ...

    @abstractmethod
    async def save_agent(self, agent: Agent) -> Agent:
        ...

    # ── Surveys ───────────────────────────────────────────────

    @abstractmethod
    async def save_survey(self, record: SurveyRecord) -> SurveyRecord:
        ...

    # ── Collections lookups ───────────────────────────────────

    @abstractmethod
    async def find_client_by_id(self, national_id: str) -> Optional[Client]:
        ...

    @abstractmethod
    async def find_debt_contracts_for_client(self, national_id: str) -> list[DebtContract]:
        """Open contracts only (not covered, not archived)."""
        ...

    @abstractmethod
    async def find_debt_detail(self, contract_id: str, self_owned: bool) -> list[DebtDetail]:
        ...
