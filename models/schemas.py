"""
Core data models for the conversation router.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChatStatus(str, Enum):
    AUTO_RESPONDER = "AUTO_RESPONDER"
    PENDING_ASSIGNMENT = "PENDING_ASSIGNMENT"
    ACTIVE = "ACTIVE"


class MessageSender(str, Enum):
    CUSTOMER = "CUSTOMER"
    BOT = "BOT"
    AGENT = "AGENT"
    SYSTEM = "SYSTEM"


class DialogueStep(str, Enum):
    START = "START"
    ASK_FOR_NAME = "ASK_FOR_NAME"
    MAIN_MENU = "MAIN_MENU"
    DISCLAIMER = "DISCLAIMER"
    AWAIT_ID = "AWAIT_ID"
    SURVEY = "SURVEY"


class SurveyRating(str, Enum):
    BAD = "MALA"
    REGULAR = "REGULAR"
    EXCELLENT = "EXCELENTE"


class AgentRole(str, Enum):
    AGENT = "agent"
    ADMIN = "admin"


# ──────────────────────────────────────────────────────────────
#  Chat — the persistent record of a support interaction
# ──────────────────────────────────────────────────────────────

class Chat(BaseModel):
    id: str = Field(default_factory=_new_id)
    contact_id: str
    customer_name: Optional[str] = None
    status: ChatStatus = ChatStatus.AUTO_RESPONDER
    assigned_agent_id: Optional[str] = None
    unread_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_human_engaged(self) -> bool:
        return self.status in (ChatStatus.ACTIVE, ChatStatus.PENDING_ASSIGNMENT)


class ChatMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    chat_id: str
    sender: MessageSender
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    content: str
    media_url: Optional[str] = None
    mime_type: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    read_at: Optional[datetime] = None


class ChatNote(BaseModel):
    """Internal note left by an agent; never delivered to the contact."""
    id: str = Field(default_factory=_new_id)
    chat_id: str
    author_id: str
    author_name: str = ""
    content: str
    created_at: datetime = Field(default_factory=_utcnow)


class ChatPage(BaseModel):
    """One page of chats, most recently updated first."""
    items: list[Chat]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit > 0 else 0

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1


# ──────────────────────────────────────────────────────────────
#  Agents — human operators; connectivity lives in the presence registry
# ──────────────────────────────────────────────────────────────

class Agent(BaseModel):
    id: str
    role: AgentRole = AgentRole.AGENT
    first_name: str = ""
    last_name: str = ""
    email: str = ""

    @property
    def display_name(self) -> str:
        return self.first_name or self.email or "Agente"


class AgentPresence(BaseModel):
    """Snapshot of a connected agent, keyed by connection id in the registry."""
    connection_id: str
    agent_id: str
    role: AgentRole = AgentRole.AGENT
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    connected_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_agent(cls, connection_id: str, agent: Agent) -> AgentPresence:
        return cls(
            connection_id=connection_id,
            agent_id=agent.id,
            role=agent.role,
            first_name=agent.first_name,
            last_name=agent.last_name,
            email=agent.email,
        )


# ──────────────────────────────────────────────────────────────
#  Dialogue state — per-contact, TTL-bound, lives in the shared store
# ──────────────────────────────────────────────────────────────

class CompanyDebts(BaseModel):
    header: str
    items: list[dict[str, Any]] = []


class DialogueState(BaseModel):
    """
    Position of a contact in the automated dialogue.

    `step` is kept as a plain string so that a stored value from an older
    deployment still decodes; the engine routes unknown steps to its
    recovery branch.
    """
    step: str = DialogueStep.START.value
    terms_accepted: bool = False
    national_id: Optional[str] = None
    companies: list[CompanyDebts] = []

    @field_validator("step", mode="before")
    @classmethod
    def _coerce_step(cls, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        return value


# ──────────────────────────────────────────────────────────────
#  Inbound — normalized record delivered by the messaging channel
# ──────────────────────────────────────────────────────────────

class InboundMessage(BaseModel):
    contact_id: str
    text: str = ""
    has_media: bool = False
    mime_type: Optional[str] = None
    sender_name: str = ""
    channel_message_id: str = ""
    metadata: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Survey
# ──────────────────────────────────────────────────────────────

class SurveyRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    chat_id: str
    rating: Optional[SurveyRating] = None
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Debt lookup records
# ──────────────────────────────────────────────────────────────

class Client(BaseModel):
    id: str
    national_id: str
    name: str


class DebtContract(BaseModel):
    id: str
    self_owned: bool
    portfolio_description: str = ""


class DebtDetail(BaseModel):
    product: Optional[str] = None
    total_amount: Decimal = Decimal("0")
    settlement_amount: Decimal = Decimal("0")
    balance_at_cutoff: Decimal = Decimal("0")


# ──────────────────────────────────────────────────────────────
#  Engine results — what the dialogue engine asks the router to do
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Reply:
    text: str


@dataclass(frozen=True)
class Escalate:
    pass


@dataclass(frozen=True)
class SurveyStarted:
    text: str


EngineResult = Union[Reply, Escalate, SurveyStarted]
