"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Two groups of tables:
  - Routing tables (agents, chats, messages, chat_notes, survey_responses) written by
    the router and the assignment scheduler.
  - Collections tables (clients, debt_contracts, debt_details) that the
    dialogue engine only reads when a contact asks for their balance.

String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, Numeric, ForeignKey, Index,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Agents
# ──────────────────────────────────────────────────────────────

class AgentRow(Base):
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    role: Mapped[str] = mapped_column(String(16), default="agent")
    first_name: Mapped[str] = mapped_column(String(128), default="")
    last_name: Mapped[str] = mapped_column(String(128), default="")
    email: Mapped[Optional[str]] = mapped_column(String(256), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Chats
# ──────────────────────────────────────────────────────────────

class ChatRow(Base):
    __tablename__ = "chats"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    contact_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    customer_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="AUTO_RESPONDER")
    assigned_agent_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("agents.id", ondelete="SET NULL"), nullable=True
    )
    unread_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    messages: Mapped[list["MessageRow"]] = relationship(
        back_populates="chat", order_by="MessageRow.timestamp", lazy="noload"
    )

    __table_args__ = (
        Index("ix_chats_status_agent", "status", "assigned_agent_id"),
        Index("ix_chats_status_updated", "status", "updated_at"),
    )


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    chat_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    sender: Mapped[str] = mapped_column(String(16), nullable=False)
    sender_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sender_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    content: Mapped[str] = mapped_column(Text, default="")
    media_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    chat: Mapped["ChatRow"] = relationship(back_populates="messages")

    __table_args__ = (
        Index("ix_messages_chat_ts", "chat_id", "timestamp"),
    )


class ChatNoteRow(Base):
    __tablename__ = "chat_notes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    chat_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    author_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("agents.id", ondelete="SET NULL"), nullable=True
    )
    author_name: Mapped[str] = mapped_column(String(256), default="")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_chat_notes_chat_created", "chat_id", "created_at"),
    )


class SurveyResponseRow(Base):
    __tablename__ = "survey_responses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    chat_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True
    )
    rating: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Collections (read-only for the router)
# ──────────────────────────────────────────────────────────────

class ClientRow(Base):
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    national_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")


class DebtContractRow(Base):
    __tablename__ = "debt_contracts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    client_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    self_owned: Mapped[bool] = mapped_column(Boolean, default=False)
    portfolio_description: Mapped[str] = mapped_column(String(256), default="")
    covered: Mapped[bool] = mapped_column(Boolean, default=False)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)


class DebtDetailRow(Base):
    __tablename__ = "debt_details"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    contract_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("debt_contracts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    settlement_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    balance_at_cutoff: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
