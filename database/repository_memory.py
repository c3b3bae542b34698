"""
InMemoryChatRepository — Dict-backed repository for development and testing.

Features:
  - Zero dependencies (no database)
  - Same interface as SqlChatRepository
  - Returns copies, so callers only change stored data through save_*
  - All data lost on process restart
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Iterable, Optional

from database.repository_base import ChatRepository
from models.schemas import (
    Agent, Chat, ChatMessage, ChatNote, ChatPage, ChatStatus, Client, DebtContract,
    DebtDetail, MessageSender, SurveyRecord,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryChatRepository(ChatRepository):

    def __init__(self):
        self._chats: dict[str, Chat] = {}                         # id → chat
        self._contact_index: dict[str, str] = {}                  # contact_id → chat id
        self._messages: dict[str, list[ChatMessage]] = defaultdict(list)
        self._notes: dict[str, list[ChatNote]] = defaultdict(list)
        self._agents: dict[str, Agent] = {}
        self._surveys: list[SurveyRecord] = []

        self._clients: dict[str, Client] = {}                     # national_id → client
        self._contracts: dict[str, list[DebtContract]] = defaultdict(list)
        self._details: dict[str, list[DebtDetail]] = defaultdict(list)
        logger.info("inmemory_repository_initialized")

    # ── Chats ─────────────────────────────────────────────

    async def find_chat_by_contact(self, contact_id: str) -> Optional[Chat]:
        chat_id = self._contact_index.get(contact_id)
        return await self.find_chat_by_id(chat_id) if chat_id else None

    async def find_chat_by_id(self, chat_id: str) -> Optional[Chat]:
        chat = self._chats.get(chat_id)
        return chat.model_copy(deep=True) if chat else None

    async def create_chat(self, contact_id: str, customer_name: Optional[str] = None) -> Chat:
        chat = Chat(contact_id=contact_id, customer_name=customer_name)
        self._chats[chat.id] = chat
        self._contact_index[contact_id] = chat.id
        logger.info("chat_created", chat_id=chat.id, contact_id=contact_id)
        return chat.model_copy(deep=True)

    async def save_chat(self, chat: Chat) -> Chat:
        stored = self._chats.get(chat.id)
        # unread_count is only changed through increment/reset
        unread = stored.unread_count if stored else chat.unread_count
        saved = chat.model_copy(deep=True, update={"unread_count": unread})
        self._chats[chat.id] = saved
        self._contact_index[chat.contact_id] = chat.id
        return saved.model_copy(deep=True)

    async def increment_unread(self, chat_id: str, amount: int = 1) -> None:
        chat = self._chats.get(chat_id)
        if chat:
            chat.unread_count += amount

    async def reset_unread(self, chat_id: str) -> None:
        chat = self._chats.get(chat_id)
        if chat:
            chat.unread_count = 0

    async def count_active_chats(self, agent_id: str) -> int:
        return sum(
            1 for c in self._chats.values()
            if c.status == ChatStatus.ACTIVE and c.assigned_agent_id == agent_id
        )

    async def find_stale_active_chats(self, updated_before: datetime) -> list[Chat]:
        return [
            c.model_copy(deep=True) for c in self._chats.values()
            if c.status == ChatStatus.ACTIVE and c.updated_at < updated_before
        ]

    async def list_chats(self, page: int = 1, limit: int = 50) -> ChatPage:
        ordered = sorted(self._chats.values(), key=lambda c: c.updated_at, reverse=True)
        start = (page - 1) * limit
        return ChatPage(
            items=[c.model_copy(deep=True) for c in ordered[start:start + limit]],
            total=len(ordered),
            page=page,
            limit=limit,
        )

    # ── Messages ──────────────────────────────────────────

    async def add_message(self, message: ChatMessage) -> ChatMessage:
        self._messages[message.chat_id].append(message.model_copy(deep=True))
        return message

    async def list_messages(self, chat_id: str, limit: int = 100) -> list[ChatMessage]:
        return [m.model_copy(deep=True) for m in self._messages.get(chat_id, [])[-limit:]]

    async def mark_messages_read(self, chat_id: str) -> int:
        now = _utcnow()
        marked = 0
        for msg in self._messages.get(chat_id, []):
            if msg.sender == MessageSender.CUSTOMER and msg.read_at is None:
                msg.read_at = now
                marked += 1
        return marked

    # ── Internal notes ────────────────────────────────────

    async def add_note(self, note: ChatNote) -> ChatNote:
        self._notes[note.chat_id].append(note.model_copy())
        return note

    async def list_notes(self, chat_id: str) -> list[ChatNote]:
        return [n.model_copy() for n in self._notes.get(chat_id, [])]

    # ── Agents ────────────────────────────────────────────

    async def find_agent_by_id(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return agent.model_copy() if agent else None

    async def save_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent.model_copy()
        return agent

    # ── Surveys ───────────────────────────────────────────

    async def save_survey(self, record: SurveyRecord) -> SurveyRecord:
        self._surveys.append(record.model_copy())
        logger.info("survey_saved", chat_id=record.chat_id,
                    rating=record.rating.value if record.rating else None)
        return record

    async def list_surveys(self, chat_id: Optional[str] = None) -> list[SurveyRecord]:
        return [s for s in self._surveys if chat_id is None or s.chat_id == chat_id]

    # ── Collections lookups ───────────────────────────────

    def seed_client(
        self,
        client: Client,
        contracts: Iterable[tuple[DebtContract, Iterable[DebtDetail]]] = (),
    ) -> None:
        """Load a client with its open contracts and their detail rows."""
        self._clients[client.national_id] = client
        for contract, details in contracts:
            self._contracts[client.national_id].append(contract)
            self._details[contract.id].extend(details)

    async def find_client_by_id(self, national_id: str) -> Optional[Client]:
        return self._clients.get(national_id)

    async def find_debt_contracts_for_client(self, national_id: str) -> list[DebtContract]:
        return list(self._contracts.get(national_id, []))

    async def find_debt_detail(self, contract_id: str, self_owned: bool) -> list[DebtDetail]:
        contract = next(
            (c for contracts in self._contracts.values() for c in contracts if c.id == contract_id),
            None,
        )
        if contract is None or contract.self_owned != self_owned:
            return []
        return list(self._details.get(contract_id, []))
