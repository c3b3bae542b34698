"""
SqlChatRepository — Portable SQL queries for PostgreSQL and SQLite.

Each call opens its own transactional session via get_session(), so a
failure rolls back only that call.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update

from database.models import (
    AgentRow, ChatNoteRow, ChatRow, ClientRow, DebtContractRow, DebtDetailRow,
    MessageRow, SurveyResponseRow,
)
from database.repository_base import ChatRepository
from database.session import get_session
from models.schemas import (
    Agent, AgentRole, Chat, ChatMessage, ChatNote, ChatPage, ChatStatus, Client,
    DebtContract, DebtDetail, MessageSender, SurveyRecord,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlChatRepository(ChatRepository):
    """
    Persistent repository backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.
    """

    # ── Chat operations ────────────────────────────────────

    async def find_chat_by_contact(self, contact_id: str) -> Optional[Chat]:
        async with get_session() as db:
            stmt = select(ChatRow).where(ChatRow.contact_id == contact_id)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_chat(row) if row else None

    async def find_chat_by_id(self, chat_id: str) -> Optional[Chat]:
        async with get_session() as db:
            row = await db.get(ChatRow, chat_id)
            return self._row_to_chat(row) if row else None

    async def create_chat(self, contact_id: str, customer_name: Optional[str] = None) -> Chat:
        chat = Chat(contact_id=contact_id, customer_name=customer_name)
        async with get_session() as db:
            db.add(ChatRow(
                id=chat.id,
                contact_id=chat.contact_id,
                customer_name=chat.customer_name,
                status=chat.status.value,
                assigned_agent_id=None,
                unread_count=0,
                created_at=chat.created_at,
                updated_at=chat.updated_at,
            ))
        logger.info("chat_created", chat_id=chat.id, contact_id=contact_id)
        return chat

    async def save_chat(self, chat: Chat) -> Chat:
        async with get_session() as db:
            row = await db.get(ChatRow, chat.id)
            if row is None:
                row = ChatRow(id=chat.id, contact_id=chat.contact_id, created_at=chat.created_at)
                db.add(row)
            row.customer_name = chat.customer_name
            row.status = chat.status.value
            row.assigned_agent_id = chat.assigned_agent_id
            row.updated_at = chat.updated_at
        return chat

    async def increment_unread(self, chat_id: str, amount: int = 1) -> None:
        async with get_session() as db:
            await db.execute(
                update(ChatRow)
                .where(ChatRow.id == chat_id)
                .values(unread_count=ChatRow.unread_count + amount)
            )

    async def reset_unread(self, chat_id: str) -> None:
        async with get_session() as db:
            await db.execute(
                update(ChatRow).where(ChatRow.id == chat_id).values(unread_count=0)
            )

    async def count_active_chats(self, agent_id: str) -> int:
        async with get_session() as db:
            stmt = select(func.count(ChatRow.id)).where(
                ChatRow.status == ChatStatus.ACTIVE.value,
                ChatRow.assigned_agent_id == agent_id,
            )
            result = await db.execute(stmt)
            return int(result.scalar_one())

    async def find_stale_active_chats(self, updated_before: datetime) -> list[Chat]:
        async with get_session() as db:
            stmt = select(ChatRow).where(
                ChatRow.status == ChatStatus.ACTIVE.value,
                ChatRow.updated_at < updated_before,
            )
            result = await db.execute(stmt)
            return [self._row_to_chat(r) for r in result.scalars()]

    async def list_chats(self, page: int = 1, limit: int = 50) -> ChatPage:
        async with get_session() as db:
            total = (await db.execute(select(func.count(ChatRow.id)))).scalar_one()
            stmt = (
                select(ChatRow)
                .order_by(ChatRow.updated_at.desc(), ChatRow.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            result = await db.execute(stmt)
            items = [self._row_to_chat(r) for r in result.scalars()]
        return ChatPage(items=items, total=int(total), page=page, limit=limit)

    # ── Message operations ─────────────────────────────────

    async def add_message(self, message: ChatMessage) -> ChatMessage:
        async with get_session() as db:
            db.add(MessageRow(
                id=message.id,
                chat_id=message.chat_id,
                sender=message.sender.value,
                sender_id=message.sender_id,
                sender_name=message.sender_name,
                content=message.content,
                media_url=message.media_url,
                mime_type=message.mime_type,
                timestamp=message.timestamp,
                read_at=message.read_at,
            ))
        return message

    async def list_messages(self, chat_id: str, limit: int = 100) -> list[ChatMessage]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.chat_id == chat_id)
                .order_by(MessageRow.timestamp.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            rows = list(result.scalars())
            return [self._row_to_message(r) for r in reversed(rows)]

    async def mark_messages_read(self, chat_id: str) -> int:
        async with get_session() as db:
            result = await db.execute(
                update(MessageRow)
                .where(
                    MessageRow.chat_id == chat_id,
                    MessageRow.sender == MessageSender.CUSTOMER.value,
                    MessageRow.read_at.is_(None),
                )
                .values(read_at=_utcnow())
            )
            return result.rowcount or 0

    # ── Internal notes ─────────────────────────────────────

    async def add_note(self, note: ChatNote) -> ChatNote:
        async with get_session() as db:
            db.add(ChatNoteRow(
                id=note.id,
                chat_id=note.chat_id,
                author_id=note.author_id,
                author_name=note.author_name,
                content=note.content,
                created_at=note.created_at,
            ))
        return note

    async def list_notes(self, chat_id: str) -> list[ChatNote]:
        async with get_session() as db:
            stmt = (
                select(ChatNoteRow)
                .where(ChatNoteRow.chat_id == chat_id)
                .order_by(ChatNoteRow.created_at)
            )
            result = await db.execute(stmt)
            return [
                ChatNote(
                    id=r.id,
                    chat_id=r.chat_id,
                    author_id=r.author_id or "",
                    author_name=r.author_name or "",
                    content=r.content,
                    created_at=r.created_at,
                )
                for r in result.scalars()
            ]

    # ── Agent operations ───────────────────────────────────

    async def find_agent_by_id(self, agent_id: str) -> Optional[Agent]:
        async with get_session() as db:
            row = await db.get(AgentRow, agent_id)
            if row is None:
                return None
            return Agent(
                id=row.id,
                role=AgentRole(row.role),
                first_name=row.first_name or "",
                last_name=row.last_name or "",
                email=row.email or "",
            )

    async def save_agent(self, agent: Agent) -> Agent:
        async with get_session() as db:
            row = await db.get(AgentRow, agent.id)
            if row is None:
                row = AgentRow(id=agent.id)
                db.add(row)
            row.role = agent.role.value
            row.first_name = agent.first_name
            row.last_name = agent.last_name
            row.email = agent.email or None
        return agent

    # ── Survey operations ──────────────────────────────────

    async def save_survey(self, record: SurveyRecord) -> SurveyRecord:
        async with get_session() as db:
            db.add(SurveyResponseRow(
                id=record.id,
                chat_id=record.chat_id,
                rating=record.rating.value if record.rating else None,
                comment=record.comment,
                created_at=record.created_at,
            ))
        logger.info("survey_saved", chat_id=record.chat_id,
                    rating=record.rating.value if record.rating else None)
        return record

    # ── Collections lookups ────────────────────────────────

    async def find_client_by_id(self, national_id: str) -> Optional[Client]:
        async with get_session() as db:
            stmt = select(ClientRow).where(ClientRow.national_id == national_id)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return Client(id=row.id, national_id=row.national_id, name=row.name or "")

    async def find_debt_contracts_for_client(self, national_id: str) -> list[DebtContract]:
        async with get_session() as db:
            stmt = (
                select(DebtContractRow)
                .join(ClientRow, ClientRow.id == DebtContractRow.client_id)
                .where(
                    ClientRow.national_id == national_id,
                    DebtContractRow.covered.is_(False),
                    DebtContractRow.archived.is_(False),
                )
            )
            result = await db.execute(stmt)
            return [
                DebtContract(
                    id=r.id,
                    self_owned=bool(r.self_owned),
                    portfolio_description=r.portfolio_description or "",
                )
                for r in result.scalars()
            ]

    async def find_debt_detail(self, contract_id: str, self_owned: bool) -> list[DebtDetail]:
        async with get_session() as db:
            stmt = (
                select(DebtDetailRow)
                .join(DebtContractRow, DebtContractRow.id == DebtDetailRow.contract_id)
                .where(
                    DebtContractRow.id == contract_id,
                    DebtContractRow.self_owned.is_(self_owned),
                )
            )
            if not self_owned:
                stmt = stmt.where(DebtContractRow.archived.is_(False))
            result = await db.execute(stmt)
            details = []
            for r in result.scalars():
                if self_owned:
                    details.append(DebtDetail(
                        product=r.product,
                        total_amount=r.total_amount,
                        settlement_amount=r.settlement_amount,
                    ))
                else:
                    details.append(DebtDetail(product=r.product, balance_at_cutoff=r.balance_at_cutoff))
            return details

    # ── Conversion helpers ─────────────────────────────────

    @staticmethod
    def _row_to_chat(row: ChatRow) -> Chat:
        return Chat(
            id=row.id,
            contact_id=row.contact_id,
            customer_name=row.customer_name,
            status=ChatStatus(row.status),
            assigned_agent_id=row.assigned_agent_id,
            unread_count=row.unread_count or 0,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> ChatMessage:
        return ChatMessage(
            id=row.id,
            chat_id=row.chat_id,
            sender=MessageSender(row.sender),
            sender_id=row.sender_id,
            sender_name=row.sender_name,
            content=row.content or "",
            media_url=row.media_url,
            mime_type=row.mime_type,
            timestamp=row.timestamp,
            read_at=row.read_at,
        )
